"""
Provider webhook notifications.

Applies a push notification to the local document immediately, then runs a
best-effort reconcile so the local state converges on the provider's full
view. Anything that goes wrong is logged; the HTTP layer always acknowledges
the notification.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from esign.models.document import Document, Recipient, RecipientRole, RecipientStatus
from esign.models.document_event import DocumentEventAction
from esign.services.document_repository import DocumentRepository
from esign.services.reconciliation import (
    ChangeRecorder,
    FieldChange,
    apply_document_status,
    derive_document_status,
    recipient_label,
)
from esign.utils.timestamps import parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class WebhookEvent:
    ACTION_COMPLETED = "AGREEMENT_ACTION_COMPLETED"
    SIGNED = "AGREEMENT_SIGNED"
    ACTION_VIEWED = "AGREEMENT_ACTION_VIEWED"
    EMAIL_VIEWED = "AGREEMENT_EMAIL_VIEWED"
    ACTION_DECLINED = "AGREEMENT_ACTION_DECLINED"
    ACTION_DELEGATED = "AGREEMENT_ACTION_DELEGATED"
    WORKFLOW_COMPLETED = "AGREEMENT_WORKFLOW_COMPLETED"


@dataclass
class WebhookResult:
    event: Optional[str]
    agreement_id: Optional[str]
    document_id: Optional[str] = None
    handled: bool = False
    message: str = ""
    changes: list[FieldChange] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "agreement_id": self.agreement_id,
            "document_id": self.document_id,
            "handled": self.handled,
            "message": self.message,
            "changes": [c.to_dict() for c in self.changes],
        }


class WebhookEventHandler:
    def __init__(self, session_factory: async_sessionmaker, status_sync=None, reminders=None, clock=utcnow):
        self.session_factory = session_factory
        self.status_sync = status_sync
        self.reminders = reminders
        self.clock = clock
        self._handlers = {
            WebhookEvent.ACTION_COMPLETED: self._on_signed,
            WebhookEvent.SIGNED: self._on_signed,
            WebhookEvent.ACTION_VIEWED: self._on_viewed,
            WebhookEvent.EMAIL_VIEWED: self._on_viewed,
            WebhookEvent.ACTION_DECLINED: self._on_declined,
            WebhookEvent.ACTION_DELEGATED: self._on_delegated,
            WebhookEvent.WORKFLOW_COMPLETED: self._on_workflow_completed,
        }

    async def handle(self, payload: dict) -> WebhookResult:
        event = payload.get("event")
        agreement = payload.get("agreement") or {}
        agreement_id = agreement.get("id")
        result = WebhookResult(event=event, agreement_id=agreement_id)
        logger.info(f"Webhook event {event} for agreement {agreement_id}")

        if not agreement_id:
            logger.error("No agreement id in webhook payload")
            result.message = "No agreement id in payload"
            return result

        handler = self._handlers.get(event)
        async with self.session_factory() as db:
            repo = DocumentRepository(db)
            document = await repo.find_by_agreement_id(agreement_id)
            if document is None:
                logger.warning(f"No document found for agreement {agreement_id}")
                result.message = "No document for agreement"
                return result
            result.document_id = document.id

            recorder = ChangeRecorder(result.changes)
            if handler is None:
                logger.info(f"Unhandled webhook event type: {event}")
                result.message = "Event type not handled"
            else:
                occurred_at = parse_timestamp(payload.get("eventDate")) or self.clock()
                handler(document, payload, recorder, occurred_at)
                apply_document_status(document, derive_document_status(document.recipients), recorder, self.clock())
                result.handled = True
                result.message = f"Applied {len(result.changes)} change(s)"

            participant = payload.get("participant") or {}
            action = (
                DocumentEventAction.recipient_delegated
                if result.handled and event == WebhookEvent.ACTION_DELEGATED
                else DocumentEventAction.webhook_received
            )
            repo.add_event(
                document,
                action.value,
                f"Webhook {event}",
                details={
                    "event": event,
                    "participant_email": participant.get("email"),
                    "changes": [c.to_dict() for c in result.changes],
                },
                source="webhook",
            )
            await repo.save(document)
            terminal = document.is_terminal

        if result.handled and self.status_sync is not None:
            outcome = await self.status_sync.reconcile(result.document_id, source="webhook")
            if not outcome.ok:
                logger.info(
                    f"Follow-up reconcile for document {result.document_id} did not complete: "
                    f"{outcome.skipped_reason or outcome.error}"
                )
            elif outcome.document is not None:
                terminal = outcome.document.is_terminal

        if terminal and self.reminders is not None:
            self.reminders.clear_document_reminders(result.document_id)
        return result

    @staticmethod
    def _recipient(document: Document, payload: dict) -> Optional[Recipient]:
        email = (payload.get("participant") or {}).get("email")
        if not email:
            return None
        recipient = document.recipient_by_email(email)
        if recipient is None:
            logger.warning(f"Recipient {email} not found in document {document.id}")
        return recipient

    def _on_signed(self, document, payload, recorder: ChangeRecorder, occurred_at) -> None:
        recipient = self._recipient(document, payload)
        if recipient is None:
            if (payload.get("agreement") or {}).get("status") == "SIGNED":
                self._on_workflow_completed(document, payload, recorder, occurred_at)
            return
        label = recipient_label(recipient)
        recorder.set(recipient, label, "status", RecipientStatus.signed.value)
        recorder.advance(recipient, label, "signed_at", occurred_at)
        logger.info(f"Document {document.id}: {recipient.email} signed")

    def _on_viewed(self, document, payload, recorder: ChangeRecorder, occurred_at) -> None:
        recipient = self._recipient(document, payload)
        if recipient is None:
            return
        label = recipient_label(recipient)
        if (recipient.status or RecipientStatus.pending.value) in (RecipientStatus.pending.value, RecipientStatus.sent.value):
            recorder.set(recipient, label, "status", RecipientStatus.viewed.value)
        recorder.advance(recipient, label, "last_signing_url_accessed", occurred_at)

    def _on_declined(self, document, payload, recorder: ChangeRecorder, occurred_at) -> None:
        recipient = self._recipient(document, payload)
        if recipient is None:
            return
        recorder.set(recipient, recipient_label(recipient), "status", RecipientStatus.declined.value)
        logger.info(f"Document {document.id}: {recipient.email} declined")

    def _on_delegated(self, document, payload, recorder: ChangeRecorder, occurred_at) -> None:
        recipient = self._recipient(document, payload)
        delegatee = payload.get("delegatee") or {}
        delegatee_email = delegatee.get("email")
        if recipient is None or not delegatee_email:
            return
        if document.recipient_by_email(delegatee_email) is not None:
            logger.info(f"Document {document.id}: delegatee {delegatee_email} already a recipient")
            return

        label = recipient_label(recipient)
        recorder.set(recipient, label, "status", RecipientStatus.waiting.value)
        recorder.set(recipient, label, "delegated_to", delegatee_email)
        document.recipients.append(Recipient(
            email=delegatee_email,
            name=delegatee.get("name") or "Delegated Signer",
            order=recipient.order,
            role=recipient.role or RecipientRole.signer.value,
            status=RecipientStatus.pending.value,
        ))
        recorder.changes.append(FieldChange(
            entity=f"recipient:{delegatee_email.lower()}", field="delegated_from", old=None, new=recipient.email,
        ))
        logger.info(f"Document {document.id}: {recipient.email} delegated to {delegatee_email}")

    def _on_workflow_completed(self, document, payload, recorder: ChangeRecorder, occurred_at) -> None:
        for recipient in document.active_recipients():
            if not recipient.is_signer:
                continue
            label = recipient_label(recipient)
            recorder.set(recipient, label, "status", RecipientStatus.signed.value)
            if recipient.signed_at is None:
                recorder.set(recipient, label, "signed_at", occurred_at)
        logger.info(f"Document {document.id}: workflow completed")
