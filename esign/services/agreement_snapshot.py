"""
Canonical view of a remote agreement.

The provider returns participant data in several shapes depending on API
version and agreement type. parse_agreement_snapshot() is the single place
that knows about those shapes; everything downstream works with
RemoteAgreementSnapshot only.

Parsing never raises. A payload with no recognizable participant data
produces a snapshot with has_participant_data=False.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from esign.utils.timestamps import latest, parse_timestamp

logger = logging.getLogger(__name__)

# Member fields that carry "this participant finished" evidence
COMPLETION_DATE_FIELDS = ("completedDate", "signedDate", "dateSigned", "completionDate")
STATUS_UPDATE_DATE_FIELDS = ("statusUpdateDate", "statusDate", "lastModifiedDate")
ACCESS_DATE_FIELDS = ("accessDate", "lastViewedDate", "viewedDate", "lastAccessDate")

SIGN_EVENT_TYPES = frozenset({
    "ACTION_COMPLETED",
    "ESIGNED",
    "SIGNED",
    "APPROVED",
    "ACCEPTED",
    "FORM_FILLED",
    "ACKNOWLEDGED",
    "DIGSIGNED",
    "PARTICIPANT_COMPLETED",
    "AGREEMENT_ACTION_COMPLETED",
    "AGREEMENT_SIGNED",
})

VIEW_EVENT_TYPES = frozenset({
    "EMAIL_VIEWED",
    "VIEWED",
    "DOCUMENT_VIEWED",
    "ACTION_VIEWED",
    "AGREEMENT_EMAIL_VIEWED",
    "AGREEMENT_ACTION_VIEWED",
})


@dataclass
class MemberSnapshot:
    email: Optional[str] = None
    name: Optional[str] = None
    status: Optional[str] = None
    member_id: Optional[str] = None
    participant_id: Optional[str] = None
    user_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    status_updated_at: Optional[datetime] = None
    accessed_at: Optional[datetime] = None

    @property
    def email_key(self) -> Optional[str]:
        return self.email.strip().lower() if self.email else None

    @property
    def reminder_id(self) -> Optional[str]:
        """Identifier the provider accepts as a reminder target."""
        return self.member_id or self.participant_id or self.user_id


@dataclass
class ParticipantSetSnapshot:
    set_id: Optional[str] = None
    order: Optional[int] = None
    role: str = "SIGNER"
    status: Optional[str] = None
    members: list[MemberSnapshot] = field(default_factory=list)

    @property
    def is_signer_set(self) -> bool:
        return self.role.upper() in ("SIGNER", "APPROVER", "ACCEPTOR", "FORM_FILLER", "DELEGATE_TO_SIGNER")


@dataclass
class AgreementEvent:
    type: str
    participant_email: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @property
    def is_sign_event(self) -> bool:
        return self.type.upper() in SIGN_EVENT_TYPES

    @property
    def is_view_event(self) -> bool:
        return self.type.upper() in VIEW_EVENT_TYPES


@dataclass
class RemoteAgreementSnapshot:
    agreement_id: Optional[str] = None
    name: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    participant_sets: list[ParticipantSetSnapshot] = field(default_factory=list)
    events: list[AgreementEvent] = field(default_factory=list)
    has_participant_data: bool = False

    def members(self):
        """Yield (participant_set, member) pairs in set order."""
        for participant_set in self.ordered_sets():
            for member in participant_set.members:
                yield participant_set, member

    def ordered_sets(self) -> list[ParticipantSetSnapshot]:
        indexed = list(enumerate(self.participant_sets))
        indexed.sort(key=lambda pair: (pair[1].order if pair[1].order is not None else 10_000 + pair[0]))
        return [s for _, s in indexed]

    def signer_sets(self) -> list[ParticipantSetSnapshot]:
        return [s for s in self.ordered_sets() if s.is_signer_set]

    def events_for(self, email: Optional[str]) -> list[AgreementEvent]:
        if not email:
            return []
        key = email.strip().lower()
        return [e for e in self.events if e.participant_email and e.participant_email.strip().lower() == key]

    def sign_times_for(self, email: Optional[str]) -> list[datetime]:
        return [e.occurred_at for e in self.events_for(email) if e.is_sign_event and e.occurred_at]

    def view_times_for(self, email: Optional[str]) -> list[datetime]:
        return [e.occurred_at for e in self.events_for(email) if e.is_view_event and e.occurred_at]


@dataclass
class AgreementSummary:
    """One row of an agreement search."""

    id: str
    name: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _first_date(raw: dict, names: tuple[str, ...]) -> Optional[datetime]:
    return latest(parse_timestamp(raw.get(name)) for name in names)


def _parse_member(raw: Any, set_status: Optional[str]) -> Optional[MemberSnapshot]:
    # Bare participant id strings carry no email or status
    if isinstance(raw, str):
        return MemberSnapshot(participant_id=_text(raw), status=set_status)
    if not isinstance(raw, dict):
        return None
    return MemberSnapshot(
        email=_text(raw.get("email") or raw.get("emailAddress")),
        name=_text(raw.get("name") or raw.get("fullName")),
        status=_text(raw.get("status")) or set_status,
        member_id=_text(raw.get("id") or raw.get("memberId")),
        participant_id=_text(raw.get("participantId")),
        user_id=_text(raw.get("userId")),
        completed_at=_first_date(raw, COMPLETION_DATE_FIELDS),
        status_updated_at=_first_date(raw, STATUS_UPDATE_DATE_FIELDS),
        accessed_at=_first_date(raw, ACCESS_DATE_FIELDS),
    )


def _parse_set(raw: Any) -> Optional[ParticipantSetSnapshot]:
    if not isinstance(raw, dict):
        return None
    status = _text(raw.get("status"))
    raw_members = raw.get("memberInfos")
    if raw_members is None:
        raw_members = raw.get("members")
    if raw_members is None:
        raw_members = raw.get("participantIds")
    flat = raw_members is None and bool(raw.get("email") or raw.get("participantId"))
    if flat:
        # Flat participant entry: the object is its own single member and has no set id
        raw_members = [raw]
    members = []
    for raw_member in raw_members or []:
        member = _parse_member(raw_member, status)
        if member is not None:
            members.append(member)
    return ParticipantSetSnapshot(
        set_id=None if flat else _text(raw.get("id") or raw.get("participantSetId")),
        order=_int(raw.get("order")),
        role=_text(raw.get("role")) or "SIGNER",
        status=status,
        members=members,
    )


def _raw_sets(payload: dict) -> list:
    candidates = [
        payload.get("participantSets"),
        payload.get("participantSetsInfo"),
    ]
    participants = payload.get("participants")
    if isinstance(participants, dict):
        candidates.append(participants.get("participantSets"))
        if isinstance(participants.get("members"), list):
            candidates.append([{"members": participants["members"], "order": 1}])
    elif isinstance(participants, list):
        candidates.append(participants)
    single = payload.get("participantSet")
    if isinstance(single, dict):
        candidates.append([single])
    for candidate in candidates:
        if isinstance(candidate, list) and candidate:
            return candidate
    return []


def _parse_events(raw_events: Any) -> list[AgreementEvent]:
    if isinstance(raw_events, dict):
        raw_events = raw_events.get("events")
    events = []
    for raw in raw_events or []:
        if not isinstance(raw, dict):
            continue
        event_type = _text(raw.get("type"))
        if not event_type:
            continue
        events.append(AgreementEvent(
            type=event_type,
            participant_email=_text(raw.get("participantEmail") or raw.get("actingUserEmail")),
            occurred_at=parse_timestamp(raw.get("date")),
        ))
    return events


def parse_agreement_snapshot(payload: Any, events: Any = None) -> RemoteAgreementSnapshot:
    """Build a RemoteAgreementSnapshot from a provider agreement payload."""
    if not isinstance(payload, dict):
        logger.warning(f"Agreement payload is {type(payload).__name__}, expected an object")
        return RemoteAgreementSnapshot()

    sets = []
    for raw in _raw_sets(payload):
        parsed = _parse_set(raw)
        if parsed is not None:
            sets.append(parsed)

    has_members = any(s.members for s in sets)
    snapshot = RemoteAgreementSnapshot(
        agreement_id=_text(payload.get("id")),
        name=_text(payload.get("name")),
        status=_text(payload.get("status")),
        created_at=parse_timestamp(payload.get("createdDate") or payload.get("displayDate")),
        participant_sets=sets,
        events=_parse_events(events if events is not None else payload.get("events")),
        has_participant_data=has_members,
    )
    if not has_members:
        logger.warning(f"Agreement {snapshot.agreement_id} returned no participant data")
    return snapshot


def parse_agreement_summary(raw: Any) -> Optional[AgreementSummary]:
    """Parse one entry of a userAgreementList / agreementAssetsResults search."""
    if not isinstance(raw, dict):
        return None
    agreement_id = _text(raw.get("id") or raw.get("agreementId"))
    if not agreement_id:
        return None
    return AgreementSummary(
        id=agreement_id,
        name=_text(raw.get("name")),
        status=_text(raw.get("status")),
        created_at=parse_timestamp(raw.get("displayDate") or raw.get("createdDate")),
    )
