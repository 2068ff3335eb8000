"""
Reconciliation of local document state against a remote agreement snapshot.

ReconciliationEngine.reconcile() folds a RemoteAgreementSnapshot into a
Document and its recipients in place and reports every field it touched.
The engine is pure: it performs no I/O, so callers decide whether to
persist (only when the change list is non-empty).

Rules:
- Members are matched to recipients by case-insensitive email. Members
  without an email fall back to positional matching on set order, for
  sequential documents only; each positional match is logged and reported.
- A recipient status is only written when it differs.
- Timestamps never move backwards. signed_at takes the latest of every
  date the snapshot offers for that participant, and falls back to "now"
  only when the snapshot offers none and nothing is stored.
- AgreementCompletionOverride: an agreement reported SIGNED/COMPLETED marks
  every outstanding signer as signed, even without per-participant evidence.
- Document status is derived from the recipient statuses with precedence
  declined > expired > completed > partially_signed > out_for_signature
  > sent_for_signature.

Malformed snapshots never raise; they degrade to "no participant data".
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from esign.models.document import (
    Document,
    DocumentStatus,
    Recipient,
    RecipientStatus,
    TERMINAL_DOCUMENT_STATUSES,
)
from esign.services.agreement_snapshot import MemberSnapshot, ParticipantSetSnapshot, RemoteAgreementSnapshot
from esign.services.status_normalizer import (
    AGREEMENT_STATUS_MAP,
    canonical_token,
    is_agreement_complete,
    normalize_member_status,
)
from esign.utils.timestamps import advance, ensure_utc, isoformat, latest, utcnow

logger = logging.getLogger(__name__)


@dataclass
class FieldChange:
    entity: str
    field: str
    old: Any
    new: Any

    def to_dict(self) -> dict:
        return {
            "entity": self.entity,
            "field": self.field,
            "old": _jsonable(self.old),
            "new": _jsonable(self.new),
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat(value)
    return value


@dataclass
class ReconcileResult:
    document: Document
    changes: list[FieldChange] = field(default_factory=list)
    positional_matches: list[str] = field(default_factory=list)
    unmatched_members: list[str] = field(default_factory=list)
    degraded: bool = False
    override_applied: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changes)

    def summary(self) -> dict:
        return {
            "changes": [c.to_dict() for c in self.changes],
            "positional_matches": self.positional_matches,
            "unmatched_members": self.unmatched_members,
            "degraded": self.degraded,
            "override_applied": self.override_applied,
        }


class ChangeRecorder:
    """Sets attributes and records a FieldChange only when the value differs."""

    def __init__(self, changes: list[FieldChange]):
        self.changes = changes

    def set(self, obj, entity: str, name: str, value) -> bool:
        old = getattr(obj, name)
        if old == value:
            return False
        setattr(obj, name, value)
        self.changes.append(FieldChange(entity=entity, field=name, old=old, new=value))
        return True

    def advance(self, obj, entity: str, name: str, candidate: Optional[datetime]) -> bool:
        new_value = advance(getattr(obj, name), candidate)
        if new_value is None:
            return False
        return self.set(obj, entity, name, new_value)


def recipient_label(recipient: Recipient) -> str:
    return f"recipient:{(recipient.email or '').lower() or recipient.order}"


class AgreementCompletionOverride:
    """Trust the agreement-level completion over per-participant data.

    When the provider reports the whole agreement SIGNED/COMPLETED, any
    signer still shown as unsigned locally is forced to signed. This trades
    correctness for availability: a document is never stuck short of
    completion because the participant payload lagged behind.
    """

    name = "agreement_completion_override"

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def applies(self, snapshot: RemoteAgreementSnapshot) -> bool:
        return self.enabled and is_agreement_complete(snapshot.status)

    def apply(self, document: Document, recorder: ChangeRecorder, now: datetime) -> bool:
        forced = False
        for recipient in document.active_recipients():
            if not recipient.is_signer or recipient.status == RecipientStatus.signed.value:
                continue
            logger.info(
                f"Document {document.id}: agreement complete, forcing {recipient.email} to signed "
                f"(was {recipient.status})"
            )
            recorder.set(recipient, recipient_label(recipient), "status", RecipientStatus.signed.value)
            if recipient.signed_at is None:
                recorder.set(recipient, recipient_label(recipient), "signed_at", now)
            forced = True
        return forced


def derive_document_status(recipients: Iterable[Recipient]) -> Optional[DocumentStatus]:
    """Overall status implied by the recipients, or None when nothing is implied.

    Recipients superseded by a delegation are ignored. Completion only
    considers signer-role recipients.
    """
    active = [r for r in recipients if not r.delegated_to]
    if not active:
        return None
    statuses = [r.status or RecipientStatus.pending.value for r in active]
    signer_statuses = [r.status or RecipientStatus.pending.value for r in active if r.is_signer]

    if RecipientStatus.declined.value in statuses:
        return DocumentStatus.cancelled
    if RecipientStatus.expired.value in statuses:
        return DocumentStatus.expired
    if signer_statuses and all(s == RecipientStatus.signed.value for s in signer_statuses):
        return DocumentStatus.completed
    if RecipientStatus.signed.value in signer_statuses:
        return DocumentStatus.partially_signed
    if any(s in (RecipientStatus.sent.value, RecipientStatus.viewed.value) for s in statuses):
        return DocumentStatus.out_for_signature
    if all(s == RecipientStatus.waiting.value for s in statuses):
        return DocumentStatus.sent_for_signature
    return None


# Forward order of the non-terminal lifecycle
DOCUMENT_STATUS_RANK = {
    DocumentStatus.uploaded.value: 0,
    DocumentStatus.processing.value: 1,
    DocumentStatus.ready_for_signature.value: 2,
    DocumentStatus.sent_for_signature.value: 3,
    DocumentStatus.out_for_signature.value: 4,
    DocumentStatus.partially_signed.value: 5,
}


def is_backward_move(current: Optional[str], derived: DocumentStatus) -> bool:
    """True when writing `derived` over `current` would move the lifecycle backwards."""
    if current in TERMINAL_DOCUMENT_STATUSES:
        return derived.value not in TERMINAL_DOCUMENT_STATUSES
    if derived.value in TERMINAL_DOCUMENT_STATUSES:
        return False
    return DOCUMENT_STATUS_RANK.get(derived.value, 0) < DOCUMENT_STATUS_RANK.get(current, 0)


def apply_document_status(
    document: Document,
    derived: Optional[DocumentStatus],
    recorder: ChangeRecorder,
    now: datetime,
) -> None:
    """Write a derived status. Status only moves forward; terminal documents stay terminal."""
    if derived is None:
        return
    if is_backward_move(document.status, derived):
        logger.warning(
            f"Document {document.id}: ignoring derived status {derived.value}, "
            f"document is already {document.status}"
        )
        return
    recorder.set(document, "document", "status", derived.value)
    if derived == DocumentStatus.completed and document.completed_at is None:
        completed_at = latest(r.signed_at for r in document.active_recipients()) or now
        recorder.set(document, "document", "completed_at", completed_at)


class ReconciliationEngine:
    """Folds remote agreement snapshots into local documents."""

    def __init__(
        self,
        completion_override: Optional[AgreementCompletionOverride] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.completion_override = completion_override or AgreementCompletionOverride()
        self.clock = clock

    def reconcile(
        self,
        document: Document,
        snapshot: RemoteAgreementSnapshot,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        now = ensure_utc(now) or self.clock()
        result = ReconcileResult(document=document)
        recorder = ChangeRecorder(result.changes)

        override_active = self.completion_override.applies(snapshot)
        if snapshot.has_participant_data:
            self._apply_members(document, snapshot, recorder, result, override_active)
        else:
            result.degraded = True
            logger.warning(
                f"Document {document.id}: agreement {snapshot.agreement_id} has no participant data, "
                f"recipient state left unchanged"
            )

        if override_active:
            if self.completion_override.apply(document, recorder, now):
                result.override_applied = True

        self._backfill_signed_at(document, recorder, now)

        derived = None
        if not result.degraded or result.override_applied:
            derived = derive_document_status(document.recipients)
        derived = self._agreement_level_terminal(snapshot, derived)
        apply_document_status(document, derived, recorder, now)

        if result.changes:
            logger.info(f"Document {document.id}: reconciliation changed {len(result.changes)} field(s)")
        else:
            logger.debug(f"Document {document.id}: already in sync with agreement {snapshot.agreement_id}")
        return result

    def _apply_members(
        self,
        document: Document,
        snapshot: RemoteAgreementSnapshot,
        recorder: ChangeRecorder,
        result: ReconcileResult,
        override_active: bool,
    ) -> None:
        positional_used: set[int] = set()
        for participant_set, member in snapshot.members():
            recipient = self._match(document, participant_set, member, positional_used, result)
            if recipient is None:
                continue
            if self._apply_member(recipient, member, snapshot, recorder, override_active):
                result.override_applied = True

    def _match(
        self,
        document: Document,
        participant_set: ParticipantSetSnapshot,
        member: MemberSnapshot,
        positional_used: set[int],
        result: ReconcileResult,
    ) -> Optional[Recipient]:
        if member.email_key:
            recipient = document.recipient_by_email(member.email_key)
            if recipient is None:
                logger.info(f"Document {document.id}: no local recipient for remote member {member.email}")
                result.unmatched_members.append(member.email)
            return recipient

        label = member.reminder_id or f"order:{participant_set.order}"
        if not document.is_sequential or participant_set.order is None:
            logger.warning(
                f"Document {document.id}: remote member {label} has no email and cannot be matched"
            )
            result.unmatched_members.append(label)
            return None

        for recipient in document.active_recipients():
            if recipient.order == participant_set.order and id(recipient) not in positional_used:
                positional_used.add(id(recipient))
                logger.warning(
                    f"Document {document.id}: matched remote member {label} to {recipient.email} "
                    f"by signing order {participant_set.order}"
                )
                result.positional_matches.append(recipient.email)
                return recipient

        result.unmatched_members.append(label)
        return None

    def _apply_member(
        self,
        recipient: Recipient,
        member: MemberSnapshot,
        snapshot: RemoteAgreementSnapshot,
        recorder: ChangeRecorder,
        override_active: bool,
    ) -> bool:
        """Apply one member; returns True when the completion override decided the status."""
        entity = recipient_label(recipient)
        candidate = normalize_member_status(member.status, snapshot.status).value
        current = recipient.status or RecipientStatus.pending.value

        overridden = False
        if override_active and recipient.is_signer and candidate != RecipientStatus.signed.value:
            logger.info(
                f"Recipient {recipient.email}: remote status {member.status} on a completed agreement, "
                f"treating as signed"
            )
            candidate = RecipientStatus.signed.value
            overridden = True

        # The provider has no participant-level "viewed"; keep the local refinement
        keep_viewed = current == RecipientStatus.viewed.value and candidate == RecipientStatus.sent.value
        keep_signed = current == RecipientStatus.signed.value and candidate != RecipientStatus.signed.value
        if keep_signed:
            logger.warning(
                f"Recipient {recipient.email}: remote status {member.status} lags a recorded signature, "
                f"keeping signed"
            )
        elif not keep_viewed:
            recorder.set(recipient, entity, "status", candidate)

        email = member.email or recipient.email
        if recipient.status == RecipientStatus.signed.value:
            signed_candidates = [member.completed_at, member.status_updated_at, *snapshot.sign_times_for(email)]
            recorder.advance(recipient, entity, "signed_at", latest(signed_candidates))

        access_candidates = [member.accessed_at, *snapshot.view_times_for(email)]
        recorder.advance(recipient, entity, "last_signing_url_accessed", latest(access_candidates))
        return overridden

    def _backfill_signed_at(self, document: Document, recorder: ChangeRecorder, now: datetime) -> None:
        for recipient in document.active_recipients():
            if recipient.status == RecipientStatus.signed.value and recipient.signed_at is None:
                recorder.set(recipient, recipient_label(recipient), "signed_at", now)

    def _agreement_level_terminal(
        self,
        snapshot: RemoteAgreementSnapshot,
        derived: Optional[DocumentStatus],
    ) -> Optional[DocumentStatus]:
        """A cancelled or expired agreement wins even when no participant declined."""
        agreement_status = AGREEMENT_STATUS_MAP.get(canonical_token(snapshot.status))
        if derived == DocumentStatus.cancelled:
            return derived
        if agreement_status in (DocumentStatus.cancelled, DocumentStatus.expired):
            return agreement_status
        return derived
