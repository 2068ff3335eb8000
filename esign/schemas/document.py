from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Optional


class RecipientResponse(BaseModel):
    """Schema for a document recipient."""
    id: str
    email: str
    name: Optional[str] = None
    order: int
    role: str
    status: str
    signed_at: Optional[datetime] = None
    last_reminder_sent: Optional[datetime] = None
    last_signing_url_accessed: Optional[datetime] = None
    delegated_to: Optional[str] = None

    class Config:
        from_attributes = True


class DocumentResponse(BaseModel):
    """Schema for document response."""
    id: str
    title: str
    original_name: Optional[str] = None
    status: str
    signing_flow: str
    error_message: Optional[str] = None
    remote_agreement_id: Optional[str] = None
    last_reminder_sent: Optional[datetime] = None
    reminder_count: int = 0
    auto_reminders: bool = False
    reminder_urgency: Optional[str] = None
    next_reminder_at: Optional[datetime] = None
    recovery_applied: bool = False
    recovery_method: Optional[str] = None
    recovered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    recipients: list[RecipientResponse] = []

    class Config:
        from_attributes = True


class DocumentListResponse(BaseModel):
    """Paginated document list response."""
    items: list[DocumentResponse]
    total: int
    page: int
    page_size: int


class DocumentEventResponse(BaseModel):
    id: str
    document_id: str
    action: str
    description: Optional[str] = None
    source: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RecoverRequest(BaseModel):
    """Options for recovering a document after an ambiguous send failure."""
    aggressive: Optional[bool] = Field(
        None, description="Mark as sent even when no agreement is found. Defaults to server setting."
    )
    force_check: bool = Field(False, description="Verify against the provider even if already sent")
