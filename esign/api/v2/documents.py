from fastapi import APIRouter, Query, status
from typing import Optional

from esign.api.deps import DbSession, Services
from esign.exceptions import ExternalServiceError, NotFoundError, RateLimitError, ValidationError
from esign.schemas.document import (
    DocumentEventResponse,
    DocumentListResponse,
    DocumentResponse,
    RecoverRequest,
)
from esign.schemas.reminder import (
    ReminderOutcomeResponse,
    ReminderScheduleRequest,
    ReminderScheduleResponse,
    ReminderStatusResponse,
    SendReminderRequest,
)
from esign.services.document_repository import DocumentRepository
from esign.services.status_sync import SkipReason
from esign.tasks.reminder_scheduler import ReminderOptions

router = APIRouter()


async def _get_document_or_404(db, document_id: str):
    document = await DocumentRepository(db).find_by_id(document_id)
    if not document:
        raise NotFoundError("Document", document_id)
    return document


@router.get("/", response_model=DocumentListResponse)
async def list_documents(
    db: DbSession,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=500),
    status_filter: Optional[str] = Query(None, alias="status"),
):
    """List documents with pagination and optional status filter."""
    statuses = [s.strip() for s in status_filter.split(",") if s.strip()] if status_filter else None
    items, total = await DocumentRepository(db).find(statuses=statuses, page=page, page_size=page_size)
    return DocumentListResponse(items=items, total=total, page=page, page_size=page_size)


@router.get("/{document_id}", response_model=DocumentResponse)
async def get_document(document_id: str, db: DbSession):
    """Get a single document with its recipients."""
    return await _get_document_or_404(db, document_id)


@router.post("/{document_id}/reconcile")
async def reconcile_document(document_id: str, services: Services):
    """Pull the agreement from the signing provider and fold it into the document."""
    outcome = await services.status_sync.reconcile(document_id, source="api")
    if outcome.skipped_reason == SkipReason.not_found:
        raise NotFoundError("Document", document_id)
    if outcome.skipped_reason == SkipReason.rate_limited:
        raise RateLimitError(retry_after=max(services.guard.time_remaining(), 1))
    if outcome.error:
        raise ExternalServiceError("Signing provider", outcome.error)
    return outcome.to_dict()


@router.get("/{document_id}/verify")
async def verify_document(document_id: str, services: Services):
    """Compare local recipient state with the provider's without changing anything."""
    if services.guard.is_limited():
        raise RateLimitError(retry_after=max(services.guard.time_remaining(), 1))
    report = await services.status_sync.verify_document_statuses(document_id)
    if report is None:
        raise NotFoundError("Document", document_id)
    return report


@router.post("/{document_id}/recover")
async def recover_document(
    document_id: str,
    services: Services,
    request: Optional[RecoverRequest] = None,
):
    """Find out whether a failed send actually created an agreement, and adopt it."""
    request = request or RecoverRequest()
    result = await services.recovery.recover_document(
        document_id,
        aggressive=request.aggressive,
        force_check=request.force_check,
    )
    if result is None:
        raise NotFoundError("Document", document_id)
    return result.to_dict()


@router.post("/{document_id}/reminders", response_model=ReminderScheduleResponse)
async def schedule_reminders(
    document_id: str,
    request: ReminderScheduleRequest,
    services: Services,
):
    """Start (or replace) the reminder campaign for a document."""
    options = ReminderOptions(
        urgency=request.urgency,
        custom_schedule=request.custom_schedule,
        auto_reminders=request.auto_reminders,
    )
    try:
        result = await services.reminders.schedule_document_reminders(document_id, options)
    except ValueError as e:
        raise ValidationError(str(e))
    if result is None:
        raise NotFoundError("Document", document_id)
    return ReminderScheduleResponse(**result.to_dict())


@router.get("/{document_id}/reminders", response_model=ReminderStatusResponse)
async def get_reminders(document_id: str, db: DbSession, services: Services):
    """Current reminder campaign for a document."""
    await _get_document_or_404(db, document_id)
    return ReminderStatusResponse(**services.reminders.get_reminder_status(document_id))


@router.delete("/{document_id}/reminders")
async def cancel_reminders(document_id: str, db: DbSession, services: Services):
    """Cancel pending reminders and stop automatic rescheduling."""
    await _get_document_or_404(db, document_id)
    cleared = await services.reminders.disable_document_reminders(document_id)
    return {"document_id": document_id, "cleared": cleared}


@router.post(
    "/{document_id}/reminders/send-now",
    response_model=ReminderOutcomeResponse,
    status_code=status.HTTP_200_OK,
)
async def send_reminder_now(
    document_id: str,
    services: Services,
    request: Optional[SendReminderRequest] = None,
):
    """Send one reminder immediately to whoever currently needs to sign."""
    message = request.message if request else None
    outcome = await services.reminders.send_reminder_now(document_id, message=message)
    if outcome is None:
        raise NotFoundError("Document", document_id)
    return ReminderOutcomeResponse(**outcome.to_dict())


@router.get("/{document_id}/events", response_model=list[DocumentEventResponse])
async def list_document_events(
    document_id: str,
    db: DbSession,
    limit: int = Query(100, ge=1, le=500),
):
    """Event log for a document, newest first."""
    await _get_document_or_404(db, document_id)
    return await DocumentRepository(db).list_events(document_id, limit=limit)
