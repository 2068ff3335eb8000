from fastapi import APIRouter

from esign.api.deps import Services
from esign.schemas.reminder import ReminderStatusResponse

router = APIRouter()


@router.get("/", response_model=list[ReminderStatusResponse])
async def list_reminders(services: Services):
    """All active reminder campaigns in this process."""
    return [
        ReminderStatusResponse(scheduled=True, **plan)
        for plan in services.reminders.list_scheduled_reminders()
    ]
