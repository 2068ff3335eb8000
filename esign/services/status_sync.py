"""
Status synchronization between local documents and the signing provider.

Loads a document, fetches a fresh agreement snapshot (consulting the
rate-limit guard first), runs the reconciliation engine and persists only
when something changed. Failures are logged and returned in the outcome;
they are not raised, so webhook handling and reminder firing keep going.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from esign.core.rate_limit import RateLimitGuard
from esign.exceptions import (
    RemoteAmbiguousError,
    RemoteProviderError,
    RemoteRateLimitedError,
    RemoteUnavailableError,
)
from esign.models.document import Document
from esign.models.document_event import DocumentEventAction
from esign.services.agreement_snapshot import RemoteAgreementSnapshot
from esign.services.document_repository import DocumentRepository
from esign.services.esign_client import RemoteStatusClient
from esign.services.reconciliation import FieldChange, ReconcileResult, ReconciliationEngine
from esign.services.reminder_strategy import active_signer_set, is_sequential
from esign.services.status_normalizer import normalize_agreement_status, normalize_member_status, statuses_match
from esign.utils.timestamps import isoformat, utcnow

logger = logging.getLogger(__name__)


class SkipReason:
    not_found = "not_found"
    no_agreement = "no_agreement"
    rate_limited = "rate_limited"


@dataclass
class ReconcileOutcome:
    document: Optional[Document]
    snapshot: Optional[RemoteAgreementSnapshot] = None
    result: Optional[ReconcileResult] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.snapshot is not None and self.error is None and self.skipped_reason is None

    @property
    def changes(self) -> list[FieldChange]:
        return self.result.changes if self.result else []

    def to_dict(self) -> dict:
        data = {
            "document_id": self.document.id if self.document else None,
            "reconciled": self.ok,
            "status": self.document.status if self.document else None,
            "agreement_status": self.snapshot.status if self.snapshot else None,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
        }
        data.update(self.result.summary() if self.result else {"changes": []})
        return data


class StatusSyncService:
    """Reconciles documents against the provider."""

    def __init__(
        self,
        client: RemoteStatusClient,
        guard: RateLimitGuard,
        session_factory: async_sessionmaker,
        engine: Optional[ReconciliationEngine] = None,
        fetch_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.guard = guard
        self.session_factory = session_factory
        self.engine = engine or ReconciliationEngine()
        self.fetch_attempts = max(1, fetch_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep

    async def fetch_snapshot(self, agreement_id: str) -> RemoteAgreementSnapshot:
        """Fetch with linear backoff on transport failures. Reads are safe to retry."""
        token = await self.client.get_access_token()
        for attempt in range(1, self.fetch_attempts):
            try:
                return await self.client.fetch_agreement_status(token, agreement_id)
            except (RemoteAmbiguousError, RemoteUnavailableError) as e:
                delay = self.retry_backoff_seconds * attempt
                logger.warning(
                    f"Status fetch for agreement {agreement_id} failed (attempt {attempt}/"
                    f"{self.fetch_attempts}): {type(e).__name__}; retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
        return await self.client.fetch_agreement_status(token, agreement_id)

    async def reconcile(self, document_id: str, source: str = "api") -> ReconcileOutcome:
        """Reconcile one document in its own session."""
        async with self.session_factory() as db:
            repo = DocumentRepository(db)
            document = await repo.find_by_id(document_id)
            if document is None:
                logger.warning(f"Reconcile requested for unknown document {document_id}")
                return ReconcileOutcome(document=None, skipped_reason=SkipReason.not_found)
            return await self.reconcile_loaded(repo, document, source=source)

    async def reconcile_loaded(
        self,
        repo: DocumentRepository,
        document: Document,
        source: str = "api",
    ) -> ReconcileOutcome:
        """Reconcile a document already attached to ``repo``'s session."""
        if not document.remote_agreement_id:
            logger.debug(f"Document {document.id} has no remote agreement, nothing to reconcile")
            return ReconcileOutcome(document=document, skipped_reason=SkipReason.no_agreement)

        if self.guard.is_limited():
            logger.warning(
                f"Skipping reconcile of document {document.id}: provider rate limited for "
                f"{self.guard.time_remaining()}s"
            )
            return ReconcileOutcome(document=document, skipped_reason=SkipReason.rate_limited)

        try:
            snapshot = await self.fetch_snapshot(document.remote_agreement_id)
        except RemoteRateLimitedError:
            logger.warning(f"Reconcile of document {document.id} hit the provider rate limit")
            return ReconcileOutcome(document=document, skipped_reason=SkipReason.rate_limited)
        except RemoteProviderError as e:
            logger.error(f"Could not fetch agreement for document {document.id}: {type(e).__name__}: {e}")
            return ReconcileOutcome(document=document, error=f"{type(e).__name__}: {e}")

        result = self.engine.reconcile(document, snapshot)
        if result.changed:
            repo.add_event(
                document,
                DocumentEventAction.status_reconciled.value,
                f"Reconciled {len(result.changes)} field(s) from agreement status {snapshot.status}",
                details=result.summary(),
                source=source,
            )
            await repo.save(document)
        return ReconcileOutcome(document=document, snapshot=snapshot, result=result)

    async def verify_document_statuses(self, document_id: str) -> Optional[dict]:
        """Side-by-side report of local and remote recipient state. Writes nothing.

        Returns None for an unknown document. Provider errors propagate.
        """
        async with self.session_factory() as db:
            document = await DocumentRepository(db).find_by_id(document_id)
        if document is None:
            return None

        report = {
            "document_id": document.id,
            "agreement_id": document.remote_agreement_id,
            "local_status": document.status,
            "signing_flow": document.signing_flow,
            "checked_at": isoformat(utcnow()),
        }
        if not document.remote_agreement_id:
            report.update({"has_agreement": False, "recipients": [], "discrepancies": []})
            return report

        snapshot = await self.fetch_snapshot(document.remote_agreement_id)
        report.update({
            "has_agreement": True,
            "remote_status": snapshot.status,
            "remote_document_status": normalize_agreement_status(snapshot.status).value,
            "detected_flow": "SEQUENTIAL" if is_sequential(snapshot) else "PARALLEL",
            "participant_data": snapshot.has_participant_data,
        })

        remote_by_email = {}
        for participant_set, member in snapshot.members():
            if member.email_key:
                remote_by_email[member.email_key] = (participant_set, member)

        recipients = []
        discrepancies = []
        for recipient in document.recipients:
            entry = {
                "email": recipient.email,
                "name": recipient.name,
                "order": recipient.order,
                "local_status": recipient.status,
                "signed_at": isoformat(recipient.signed_at),
                "last_reminder_sent": isoformat(recipient.last_reminder_sent),
                "last_signing_url_accessed": isoformat(recipient.last_signing_url_accessed),
                "delegated_to": recipient.delegated_to,
                "found_remotely": False,
            }
            match = remote_by_email.get((recipient.email or "").strip().lower())
            if match is not None:
                participant_set, member = match
                remote_status = normalize_member_status(member.status, snapshot.status).value
                status_match = statuses_match(recipient.status, member.status, snapshot.status)
                entry.update({
                    "found_remotely": True,
                    "remote_raw_status": member.status,
                    "remote_status": remote_status,
                    "remote_set_order": participant_set.order,
                    "remote_member_id": member.reminder_id,
                    "remote_completed_at": isoformat(member.completed_at),
                    "status_match": status_match,
                    "needs_update": not status_match,
                })
                if not status_match:
                    discrepancies.append({
                        "email": recipient.email,
                        "local_status": recipient.status,
                        "remote_status": remote_status,
                        "remote_raw_status": member.status,
                    })
            recipients.append(entry)

        report["recipients"] = recipients
        report["discrepancies"] = discrepancies

        current = None
        if is_sequential(snapshot) or document.is_sequential:
            active = active_signer_set(snapshot)
            if active is not None:
                current = {
                    "order": active.order,
                    "emails": [m.email for m in active.members if m.email],
                }
        report["current_signer"] = current
        return report

