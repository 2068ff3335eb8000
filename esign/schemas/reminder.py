from pydantic import BaseModel, Field, field_validator
from typing import Optional

from esign.services.reminder_strategy import Urgency, validate_custom_schedule


class ReminderScheduleRequest(BaseModel):
    """Schema for scheduling a reminder campaign."""
    urgency: Urgency = Urgency.normal
    custom_schedule: Optional[list[float]] = Field(
        None, description="Offsets in hours from now, e.g. [6, 24, 48]. Overrides the urgency table."
    )
    auto_reminders: bool = Field(True, description="Rebuild the campaign automatically after a restart")

    @field_validator("custom_schedule")
    @classmethod
    def check_custom_schedule(cls, v: Optional[list[float]]) -> Optional[list[float]]:
        if v is None or len(v) == 0:
            return None
        return validate_custom_schedule(v)


class SendReminderRequest(BaseModel):
    message: Optional[str] = Field(None, max_length=2000)


class ScheduledReminderResponse(BaseModel):
    index: int
    offset_hours: float
    scheduled_for: Optional[str] = None
    reminder_type: str
    message: str
    fired: bool = False
    fired_at: Optional[str] = None
    outcome: Optional[str] = None


class ReminderStatusResponse(BaseModel):
    """Reminder campaign state for one document."""
    document_id: str
    scheduled: bool
    count: int = 0
    strategy: Optional[str] = None
    urgency: Optional[str] = None
    plan_id: Optional[str] = None
    sequential: Optional[bool] = None
    created_at: Optional[str] = None
    next_reminder: Optional[str] = None
    reminders: list[ScheduledReminderResponse] = []


class ReminderScheduleResponse(BaseModel):
    scheduled: bool
    message: str
    plan: Optional[ReminderStatusResponse] = None


class ReminderTargetResponse(BaseModel):
    member_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    order: Optional[int] = None


class ReminderOutcomeResponse(BaseModel):
    document_id: str
    sent: bool
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    reminder_type: Optional[str] = None
    targets: list[ReminderTargetResponse] = []
