"""
Reminder strategy planning.

Classifies an agreement's signing topology, turns (topology, urgency,
optional custom schedule) into an ordered list of reminder offsets, tags
each offset with a reminder type by position, and selects which remote
participants a reminder should go to.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from esign.services.agreement_snapshot import MemberSnapshot, ParticipantSetSnapshot, RemoteAgreementSnapshot
from esign.services.status_normalizer import (
    FINISHED_RECIPIENT_STATUSES,
    is_actionable,
    normalize_member_status,
)

logger = logging.getLogger(__name__)


class Urgency(str, enum.Enum):
    low = "low"
    normal = "normal"
    high = "high"
    critical = "critical"


class StrategyType(str, enum.Enum):
    sequential = "sequential"
    parallel = "parallel"
    custom = "custom"


class ReminderType(str, enum.Enum):
    initial = "initial"
    follow_up = "followUp"
    reminder = "reminder"
    final = "final"


# Offsets in hours from the planning instant
SEQUENTIAL_INTERVALS: dict[Urgency, list[float]] = {
    Urgency.low: [72, 168],
    Urgency.normal: [24, 72],
    Urgency.high: [12, 24, 72],
    Urgency.critical: [4, 12, 24],
}

PARALLEL_INTERVALS: dict[Urgency, list[float]] = {
    Urgency.low: [72, 168, 336],
    Urgency.normal: [24, 72, 168],
    Urgency.high: [24, 72, 168],
    Urgency.critical: [8, 24, 72],
}

REMINDER_MESSAGES: dict[ReminderType, str] = {
    ReminderType.initial: "This is a friendly reminder that your signature is needed on an important document.",
    ReminderType.follow_up: (
        "We noticed you haven't had a chance to sign the document yet. "
        "Please take a moment to review and sign when convenient."
    ),
    ReminderType.reminder: (
        "Your signature is still needed to complete this document. Please sign at your earliest convenience."
    ),
    ReminderType.final: (
        "This is the final reminder: your signature is urgently needed to complete this important document."
    ),
}

SEQUENTIAL_SUFFIX = " You are currently the next person in the signing sequence."
PARALLEL_SUFFIX = " Multiple signatures are being collected simultaneously."

MAX_CUSTOM_OFFSET_HOURS = 24 * 90


@dataclass
class PlannedReminder:
    offset_hours: float
    reminder_type: ReminderType
    message: str


@dataclass
class ReminderStrategy:
    strategy_type: StrategyType
    urgency: Urgency
    sequential: bool
    entries: list[PlannedReminder] = field(default_factory=list)

    @property
    def offsets(self) -> list[float]:
        return [e.offset_hours for e in self.entries]


@dataclass
class ReminderTarget:
    member_id: str
    email: Optional[str]
    name: Optional[str]
    set_order: Optional[int]


def is_sequential(snapshot: RemoteAgreementSnapshot) -> bool:
    """Sequential iff there are at least two signer sets and every one has a distinct order."""
    signer_sets = [s for s in snapshot.participant_sets if s.is_signer_set]
    if len(signer_sets) < 2:
        return False
    orders = [s.order for s in signer_sets]
    if any(order is None for order in orders):
        return False
    return len(set(orders)) == len(orders)


def parse_urgency(value) -> Urgency:
    if isinstance(value, Urgency):
        return value
    try:
        return Urgency((value or Urgency.normal.value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown urgency '{value}'. Expected one of: low, normal, high, critical") from None


def validate_custom_schedule(hours: Iterable[float]) -> list[float]:
    """Positive offsets in hours, sorted ascending, duplicates removed."""
    offsets = []
    for value in hours:
        try:
            offset = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"Custom schedule entry '{value}' is not a number of hours") from None
        if offset <= 0:
            raise ValueError("Custom schedule offsets must be positive")
        if offset > MAX_CUSTOM_OFFSET_HOURS:
            raise ValueError(f"Custom schedule offsets cannot exceed {MAX_CUSTOM_OFFSET_HOURS} hours")
        offsets.append(offset)
    if not offsets:
        raise ValueError("Custom schedule must contain at least one offset")
    return sorted(set(offsets))


def reminder_type_for(index: int, total: int) -> ReminderType:
    if index == 0:
        return ReminderType.initial
    if index == total - 1:
        return ReminderType.final
    if index == 1:
        return ReminderType.follow_up
    return ReminderType.reminder


def build_reminder_message(reminder_type: ReminderType, sequential: bool) -> str:
    suffix = SEQUENTIAL_SUFFIX if sequential else PARALLEL_SUFFIX
    return REMINDER_MESSAGES[reminder_type] + suffix


def plan_strategy(
    sequential: bool,
    urgency: Urgency = Urgency.normal,
    custom_schedule: Optional[Iterable[float]] = None,
) -> ReminderStrategy:
    """Ordered reminder offsets for a topology and urgency."""
    urgency = parse_urgency(urgency)
    if custom_schedule:
        offsets = validate_custom_schedule(custom_schedule)
        strategy_type = StrategyType.custom
    else:
        table = SEQUENTIAL_INTERVALS if sequential else PARALLEL_INTERVALS
        offsets = list(table[urgency])
        strategy_type = StrategyType.sequential if sequential else StrategyType.parallel

    entries = []
    for index, offset in enumerate(offsets):
        reminder_type = reminder_type_for(index, len(offsets))
        entries.append(PlannedReminder(
            offset_hours=offset,
            reminder_type=reminder_type,
            message=build_reminder_message(reminder_type, sequential),
        ))
    logger.debug(f"Planned {strategy_type.value} reminders at {offsets}h (urgency={urgency.value})")
    return ReminderStrategy(strategy_type=strategy_type, urgency=urgency, sequential=sequential, entries=entries)


def _member_status(member: MemberSnapshot, snapshot: RemoteAgreementSnapshot) -> str:
    return normalize_member_status(member.status, snapshot.status).value


def active_signer_set(snapshot: RemoteAgreementSnapshot) -> Optional[ParticipantSetSnapshot]:
    """The set whose turn it is in a sequential agreement.

    Sets whose members have all finished are skipped. The first set that is
    not finished is the active one if it has been reached; if it has not,
    nobody is active.
    """
    for participant_set in snapshot.signer_sets():
        set_status = (
            normalize_member_status(participant_set.status, snapshot.status).value
            if participant_set.status else None
        )
        statuses = [_member_status(m, snapshot) for m in participant_set.members] or [set_status]
        if all(s in FINISHED_RECIPIENT_STATUSES for s in statuses):
            continue
        if is_actionable(set_status) or any(is_actionable(s) for s in statuses):
            return participant_set
        return None
    return None


def resolve_member_id(member: MemberSnapshot, participant_set: ParticipantSetSnapshot) -> Optional[str]:
    """Member id, else participant id, else user id. The set id is never a target."""
    for candidate in (member.member_id, member.participant_id, member.user_id):
        if candidate and candidate != participant_set.set_id:
            return candidate
    return None


def _targets_from(
    participant_set: ParticipantSetSnapshot,
    snapshot: RemoteAgreementSnapshot,
) -> list[ReminderTarget]:
    targets = []
    for member in participant_set.members:
        if not is_actionable(_member_status(member, snapshot)):
            continue
        member_id = resolve_member_id(member, participant_set)
        if member_id is None:
            logger.warning(
                f"Agreement {snapshot.agreement_id}: participant {member.email} has no member id, "
                f"skipping reminder"
            )
            continue
        targets.append(ReminderTarget(
            member_id=member_id,
            email=member.email,
            name=member.name,
            set_order=participant_set.order,
        ))
    return targets


def select_reminder_targets(snapshot: RemoteAgreementSnapshot, sequential: bool) -> list[ReminderTarget]:
    """Participants who should receive the next reminder."""
    if sequential:
        participant_set = active_signer_set(snapshot)
        if participant_set is None:
            logger.info(f"Agreement {snapshot.agreement_id}: no active signer set")
            return []
        return _targets_from(participant_set, snapshot)

    targets = []
    seen = set()
    for participant_set in snapshot.signer_sets():
        for target in _targets_from(participant_set, snapshot):
            if target.member_id not in seen:
                seen.add(target.member_id)
                targets.append(target)
    return targets
