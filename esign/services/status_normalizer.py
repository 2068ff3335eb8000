"""
Status normalization.

Maps the provider's participant and agreement status tokens onto the local
RecipientStatus / DocumentStatus enums through static lookup tables.

An unrecognized participant token never drops the participant: it resolves
to ``signed`` when the agreement itself reports SIGNED/COMPLETED and to
``sent`` otherwise, so a new provider token cannot leave a document stuck.
"""

import logging
from typing import Optional

from esign.models.document import DocumentStatus, RecipientStatus

logger = logging.getLogger(__name__)


def _table(status: RecipientStatus, *tokens: str) -> dict[str, RecipientStatus]:
    return {token: status for token in tokens}


RECIPIENT_STATUS_MAP: dict[str, RecipientStatus] = {
    **_table(
        RecipientStatus.signed,
        "SIGNED", "COMPLETED", "APPROVED", "ACCEPTED", "FORM_FILLED", "ACKNOWLEDGED", "DELIVERED",
    ),
    **_table(
        RecipientStatus.declined,
        "DECLINED", "REJECTED", "RECALLED", "CANCELLED", "CANCELED",
    ),
    **_table(RecipientStatus.expired, "EXPIRED"),
    **_table(
        RecipientStatus.waiting,
        "NOT_YET_VISIBLE", "WAITING_FOR_OTHERS", "WAITING_FOR_MY_PREREQUISITES",
        "WAITING_FOR_PREREQUISITE", "WAITING_FOR_AUTHORING",
    ),
    **_table(
        RecipientStatus.sent,
        "WAITING_FOR_MY_SIGNATURE", "WAITING_FOR_MY_APPROVAL", "OUT_FOR_SIGNATURE", "ACTION_REQUESTED",
        "WAITING_FOR_SIGNATURE", "ACTIVE", "SENT", "WAITING_FOR_VERIFICATION", "WAITING_FOR_FAXING",
        "WAITING_FOR_COUNTER_SIGNATURE", "WAITING_FOR_MY_REVIEW", "WAITING_FOR_MY_ACKNOWLEDGEMENT",
        "WAITING_FOR_MY_ACCEPTANCE", "WAITING_FOR_MY_FORM_FILLING", "WAITING_FOR_MY_DELEGATION",
        "DELEGATED",
    ),
    **_table(RecipientStatus.viewed, "VIEWED", "EMAIL_VIEWED", "DOCUMENT_VIEWED"),
    **_table(
        RecipientStatus.pending,
        "DELEGATION_PENDING", "CREATED", "DRAFT", "AUTHORING",
    ),
}

AGREEMENT_STATUS_MAP: dict[str, DocumentStatus] = {
    "SIGNED": DocumentStatus.completed,
    "COMPLETED": DocumentStatus.completed,
    "APPROVED": DocumentStatus.completed,
    "ACCEPTED": DocumentStatus.completed,
    "FORM_FILLED": DocumentStatus.completed,
    "ACKNOWLEDGED": DocumentStatus.completed,
    "DELIVERED": DocumentStatus.completed,
    "CANCELLED": DocumentStatus.cancelled,
    "CANCELED": DocumentStatus.cancelled,
    "DECLINED": DocumentStatus.cancelled,
    "RECALLED": DocumentStatus.cancelled,
    "REJECTED": DocumentStatus.cancelled,
    "EXPIRED": DocumentStatus.expired,
    "OUT_FOR_SIGNATURE": DocumentStatus.out_for_signature,
    "OUT_FOR_APPROVAL": DocumentStatus.out_for_signature,
    "OUT_FOR_ACCEPTANCE": DocumentStatus.out_for_signature,
    "OUT_FOR_FORM_FILLING": DocumentStatus.out_for_signature,
    "OUT_FOR_DELIVERY": DocumentStatus.out_for_signature,
    "IN_PROCESS": DocumentStatus.out_for_signature,
    "WAITING_FOR_MY_SIGNATURE": DocumentStatus.out_for_signature,
    "WAITING_FOR_OTHERS": DocumentStatus.out_for_signature,
    "AUTHORING": DocumentStatus.processing,
    "DRAFT": DocumentStatus.processing,
    "CREATED": DocumentStatus.processing,
}

AGREEMENT_COMPLETE_STATUSES = frozenset({"SIGNED", "COMPLETED"})

# Agreement-level statuses that still await someone's action
REMINDER_ELIGIBLE_STATUSES = frozenset({
    "OUT_FOR_SIGNATURE",
    "OUT_FOR_APPROVAL",
    "IN_PROCESS",
    "WAITING_FOR_MY_SIGNATURE",
    "WAITING_FOR_OTHERS",
})

ACTIONABLE_RECIPIENT_STATUSES = frozenset({RecipientStatus.sent.value, RecipientStatus.viewed.value})

FINISHED_RECIPIENT_STATUSES = frozenset({
    RecipientStatus.signed.value,
    RecipientStatus.declined.value,
    RecipientStatus.expired.value,
})


def canonical_token(raw: Optional[str]) -> str:
    """Upper-case, trimmed, with spaces and dashes folded to underscores."""
    if not raw:
        return ""
    return str(raw).strip().upper().replace("-", "_").replace(" ", "_")


def is_agreement_complete(agreement_status: Optional[str]) -> bool:
    return canonical_token(agreement_status) in AGREEMENT_COMPLETE_STATUSES


def normalize_member_status(raw: Optional[str], agreement_status: Optional[str] = None) -> RecipientStatus:
    """Map a participant status token to a RecipientStatus."""
    token = canonical_token(raw)
    status = RECIPIENT_STATUS_MAP.get(token)
    if status is not None:
        return status
    fallback = RecipientStatus.signed if is_agreement_complete(agreement_status) else RecipientStatus.sent
    if token:
        logger.warning(
            f"Unrecognized participant status '{raw}' (agreement {agreement_status}), "
            f"treating as {fallback.value}"
        )
    return fallback


def normalize_agreement_status(raw: Optional[str]) -> DocumentStatus:
    """Map an agreement-level status token to a DocumentStatus."""
    token = canonical_token(raw)
    status = AGREEMENT_STATUS_MAP.get(token)
    if status is not None:
        return status
    if token:
        logger.warning(f"Unrecognized agreement status '{raw}', treating as out_for_signature")
    return DocumentStatus.out_for_signature


def is_reminder_eligible(agreement_status: Optional[str]) -> bool:
    return canonical_token(agreement_status) in REMINDER_ELIGIBLE_STATUSES


def is_actionable(status: Optional[str]) -> bool:
    """Recipient has been reached and has not acted yet."""
    return (status or "") in ACTIONABLE_RECIPIENT_STATUSES


def statuses_match(local_status: Optional[str], raw: Optional[str], agreement_status: Optional[str] = None) -> bool:
    return (local_status or RecipientStatus.pending.value) == normalize_member_status(raw, agreement_status).value
