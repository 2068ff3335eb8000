"""Signature Reminder Scheduler - reminder campaigns for documents out for signature.

Each document with reminders has one in-memory ReminderPlan: an ordered list
of reminders, each backed by an APScheduler DateTrigger job. Scheduling
again replaces the plan and cancels its jobs.

Every firing refreshes the document's status from the provider before doing
anything. A document that is no longer awaiting signatures has its plan
cleared and receives nothing. Failed sends are not retried within a firing;
the next reminder in the plan is the retry.

A periodic sweep reconciles active documents, clears plans for documents that
finished, and rebuilds plans for documents with auto reminders enabled
(plans are lost on restart; the persisted reminder options are not).
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from esign.core.rate_limit import RateLimitGuard
from esign.exceptions import RemoteProviderError, RemoteRateLimitedError
from esign.models.document import ACTIVE_DOCUMENT_STATUSES, Document, RecipientStatus
from esign.models.document_event import DocumentEventAction
from esign.services.agreement_snapshot import RemoteAgreementSnapshot
from esign.services.document_repository import DocumentRepository
from esign.services.esign_client import RemoteStatusClient
from esign.services.reminder_strategy import (
    ReminderTarget,
    ReminderType,
    StrategyType,
    Urgency,
    build_reminder_message,
    is_sequential,
    parse_urgency,
    plan_strategy,
    select_reminder_targets,
)
from esign.services.status_normalizer import is_reminder_eligible
from esign.services.status_sync import ReconcileOutcome, SkipReason, StatusSyncService
from esign.utils.timestamps import advance, isoformat, utcnow

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "esign_status_sweep"


@dataclass
class ReminderOptions:
    urgency: Urgency = Urgency.normal
    custom_schedule: Optional[list[float]] = None
    auto_reminders: bool = True

    @classmethod
    def from_document(cls, document: Document) -> "ReminderOptions":
        custom = None
        if document.reminder_schedule_hours:
            custom = [float(h) for h in document.reminder_schedule_hours.split(",") if h.strip()]
        return cls(
            urgency=parse_urgency(document.reminder_urgency),
            custom_schedule=custom,
            auto_reminders=bool(document.auto_reminders),
        )


@dataclass
class ScheduledReminder:
    plan_id: str
    document_id: str
    index: int
    offset_hours: float
    scheduled_for: datetime
    reminder_type: ReminderType
    message: str
    job_id: str
    fired: bool = False
    fired_at: Optional[datetime] = None
    outcome: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "offset_hours": self.offset_hours,
            "scheduled_for": isoformat(self.scheduled_for),
            "reminder_type": self.reminder_type.value,
            "message": self.message,
            "fired": self.fired,
            "fired_at": isoformat(self.fired_at),
            "outcome": self.outcome,
        }


@dataclass
class ReminderPlan:
    plan_id: str
    document_id: str
    strategy_type: StrategyType
    urgency: Urgency
    sequential: bool
    created_at: datetime
    reminders: list[ScheduledReminder] = field(default_factory=list)

    @property
    def pending(self) -> list[ScheduledReminder]:
        return [r for r in self.reminders if not r.fired]

    @property
    def next_reminder(self) -> Optional[ScheduledReminder]:
        pending = self.pending
        return pending[0] if pending else None

    def to_dict(self) -> dict:
        next_reminder = self.next_reminder
        return {
            "document_id": self.document_id,
            "plan_id": self.plan_id,
            "strategy": self.strategy_type.value,
            "urgency": self.urgency.value,
            "sequential": self.sequential,
            "created_at": isoformat(self.created_at),
            "count": len(self.pending),
            "next_reminder": isoformat(next_reminder.scheduled_for) if next_reminder else None,
            "reminders": [r.to_dict() for r in self.reminders],
        }


@dataclass
class ScheduleResult:
    scheduled: bool
    message: str
    plan: Optional[ReminderPlan] = None
    reconcile: Optional[ReconcileOutcome] = None

    def to_dict(self) -> dict:
        return {
            "scheduled": self.scheduled,
            "message": self.message,
            "plan": {"scheduled": True, **self.plan.to_dict()} if self.plan else None,
        }


@dataclass
class ReminderOutcome:
    document_id: str
    sent: bool = False
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    reminder_type: Optional[str] = None
    targets: list[ReminderTarget] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "sent": self.sent,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
            "reminder_type": self.reminder_type,
            "targets": [
                {"member_id": t.member_id, "email": t.email, "name": t.name, "order": t.set_order}
                for t in self.targets
            ],
        }


class ReminderScheduler:
    """Owns reminder plans and their scheduler jobs. Built once per process."""

    def __init__(
        self,
        status_sync: StatusSyncService,
        client: RemoteStatusClient,
        guard: RateLimitGuard,
        session_factory: async_sessionmaker,
        scheduler: Optional[AsyncIOScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
        sweep_interval_minutes: int = 30,
        misfire_grace_seconds: int = 3600,
    ):
        self.status_sync = status_sync
        self.client = client
        self.guard = guard
        self.session_factory = session_factory
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.clock = clock
        self.sweep_interval_minutes = sweep_interval_minutes
        self.misfire_grace_seconds = misfire_grace_seconds
        self._plans: dict[str, ReminderPlan] = {}
        self._lock = threading.Lock()

    # Lifecycle

    def start(self, run_sweep_now: bool = True) -> None:
        """Register the status sweep and start the scheduler."""
        self.scheduler.add_job(
            self.sweep_active_documents,
            IntervalTrigger(minutes=self.sweep_interval_minutes),
            id=SWEEP_JOB_ID,
            name="Reconcile active documents",
            replace_existing=True,
            next_run_time=self.clock() if run_sweep_now else None,
            coalesce=True,
            max_instances=1,
        )
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Signature reminder scheduler started")
            for job in self.scheduler.get_jobs():
                logger.info(f"  - {job.name}: {job.trigger}")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Signature reminder scheduler stopped")

    # Plans

    def has_plan(self, document_id: str) -> bool:
        with self._lock:
            return document_id in self._plans

    def get_plan(self, document_id: str) -> Optional[ReminderPlan]:
        with self._lock:
            return self._plans.get(document_id)

    def _install_plan(self, document_id: str, strategy, now: datetime) -> ReminderPlan:
        plan_id = uuid.uuid4().hex[:12]
        plan = ReminderPlan(
            plan_id=plan_id,
            document_id=document_id,
            strategy_type=strategy.strategy_type,
            urgency=strategy.urgency,
            sequential=strategy.sequential,
            created_at=now,
        )
        for index, entry in enumerate(strategy.entries):
            plan.reminders.append(ScheduledReminder(
                plan_id=plan_id,
                document_id=document_id,
                index=index,
                offset_hours=entry.offset_hours,
                scheduled_for=now + timedelta(hours=entry.offset_hours),
                reminder_type=entry.reminder_type,
                message=entry.message,
                job_id=f"reminder:{document_id}:{plan_id}:{index}",
            ))

        with self._lock:
            previous = self._plans.get(document_id)
            self._plans[document_id] = plan
        if previous is not None:
            self._remove_jobs(previous)
            logger.info(f"Replaced reminder plan {previous.plan_id} for document {document_id}")

        for reminder in plan.reminders:
            self.scheduler.add_job(
                self._fire,
                DateTrigger(run_date=reminder.scheduled_for),
                args=[document_id, plan_id, reminder.index],
                id=reminder.job_id,
                name=f"{reminder.reminder_type.value} reminder for document {document_id}",
                replace_existing=True,
                misfire_grace_time=self.misfire_grace_seconds,
            )
        logger.info(
            f"Scheduled {len(plan.reminders)} {plan.strategy_type.value} reminder(s) for document "
            f"{document_id} at {[r.offset_hours for r in plan.reminders]}h"
        )
        return plan

    def _remove_jobs(self, plan: ReminderPlan) -> None:
        for reminder in plan.reminders:
            if reminder.fired:
                continue
            try:
                self.scheduler.remove_job(reminder.job_id)
            except JobLookupError:
                logger.debug(f"Reminder job {reminder.job_id} already gone")

    def clear_document_reminders(self, document_id: str) -> bool:
        """Cancel pending reminder jobs and drop the plan. Returns False if there was none."""
        with self._lock:
            plan = self._plans.pop(document_id, None)
        if plan is None:
            return False
        self._remove_jobs(plan)
        logger.info(f"Cleared reminder plan {plan.plan_id} for document {document_id}")
        return True

    async def disable_document_reminders(self, document_id: str) -> bool:
        """Clear the plan and turn off auto reminders so the sweep does not rebuild it."""
        cleared = self.clear_document_reminders(document_id)
        async with self.session_factory() as db:
            repo = DocumentRepository(db)
            document = await repo.find_by_id(document_id)
            if document is not None:
                document.auto_reminders = False
                document.next_reminder_at = None
                repo.add_event(
                    document,
                    DocumentEventAction.reminders_cleared.value,
                    "Reminders cancelled",
                    source="api",
                )
                await repo.save(document)
        return cleared

    def _finish(self, reminder: ScheduledReminder) -> Optional[datetime]:
        """Drop an exhausted plan. Returns the next pending fire time, if any."""
        with self._lock:
            plan = self._plans.get(reminder.document_id)
            if plan is None or plan.plan_id != reminder.plan_id:
                return None
            next_reminder = plan.next_reminder
            if next_reminder is None:
                del self._plans[reminder.document_id]
                logger.info(f"Reminder plan {plan.plan_id} for document {reminder.document_id} exhausted")
                return None
            return next_reminder.scheduled_for

    def _is_current(self, reminder: ScheduledReminder) -> bool:
        with self._lock:
            plan = self._plans.get(reminder.document_id)
            return plan is not None and plan.plan_id == reminder.plan_id

    # Scheduling

    async def schedule_document_reminders(
        self,
        document_id: str,
        options: Optional[ReminderOptions] = None,
    ) -> Optional[ScheduleResult]:
        """Refresh status, then plan reminders. None if the document is unknown.

        Raises ValueError for an invalid urgency or custom schedule.
        """
        options = options or ReminderOptions()
        async with self.session_factory() as db:
            repo = DocumentRepository(db)
            document = await repo.find_by_id(document_id)
            if document is None:
                return None

            outcome = await self.status_sync.reconcile_loaded(repo, document, source="scheduler")
            if not outcome.ok:
                reason = outcome.skipped_reason or outcome.error
                logger.warning(f"Not scheduling reminders for document {document_id}: status refresh failed ({reason})")
                return ScheduleResult(False, f"Could not refresh document status: {reason}", reconcile=outcome)

            if not self._eligible(document, outcome.snapshot):
                self.clear_document_reminders(document_id)
                logger.info(
                    f"Not scheduling reminders for document {document_id}: agreement status "
                    f"{outcome.snapshot.status} is not awaiting signatures"
                )
                return ScheduleResult(
                    False,
                    f"Agreement status {outcome.snapshot.status} is not eligible for reminders",
                    reconcile=outcome,
                )

            plan = self._create_plan(repo, document, outcome.snapshot, options, source="api")
            await repo.save(document)
            return ScheduleResult(True, f"Scheduled {len(plan.reminders)} reminder(s)", plan=plan, reconcile=outcome)

    def _create_plan(
        self,
        repo: DocumentRepository,
        document: Document,
        snapshot: RemoteAgreementSnapshot,
        options: ReminderOptions,
        source: str,
    ) -> ReminderPlan:
        sequential = is_sequential(snapshot) if snapshot.has_participant_data else document.is_sequential
        strategy = plan_strategy(sequential, options.urgency, options.custom_schedule)
        plan = self._install_plan(document.id, strategy, self.clock())

        document.auto_reminders = options.auto_reminders
        document.reminder_urgency = strategy.urgency.value
        document.reminder_schedule_hours = (
            ",".join(f"{h:g}" for h in strategy.offsets) if strategy.strategy_type == StrategyType.custom else None
        )
        document.next_reminder_at = plan.next_reminder.scheduled_for if plan.next_reminder else None
        repo.add_event(
            document,
            DocumentEventAction.reminders_scheduled.value,
            f"Scheduled {len(plan.reminders)} {strategy.strategy_type.value} reminder(s)",
            details={
                "plan_id": plan.plan_id,
                "strategy": strategy.strategy_type.value,
                "urgency": strategy.urgency.value,
                "offsets_hours": strategy.offsets,
            },
            source=source,
        )
        return plan

    @staticmethod
    def _eligible(document: Document, snapshot: Optional[RemoteAgreementSnapshot]) -> bool:
        if document.is_terminal or snapshot is None:
            return False
        return is_reminder_eligible(snapshot.status)

    # Firing

    async def _fire(self, document_id: str, plan_id: str, index: int) -> None:
        """Scheduler job entry point."""
        plan = self.get_plan(document_id)
        if plan is None or plan.plan_id != plan_id or index >= len(plan.reminders):
            logger.debug(f"Ignoring stale reminder job for document {document_id} (plan {plan_id})")
            return
        try:
            await self.execute_reminder(plan.reminders[index])
        except Exception as e:
            logger.error(f"Reminder for document {document_id} failed: {e}", exc_info=True)

    async def execute_reminder(self, reminder: ScheduledReminder) -> ReminderOutcome:
        """Refresh status, then remind whoever currently needs to act."""
        if not self._is_current(reminder):
            logger.debug(f"Reminder {reminder.job_id} belongs to a replaced plan, skipping")
            return ReminderOutcome(document_id=reminder.document_id, skipped_reason="stale_plan")

        reminder.fired = True
        reminder.fired_at = self.clock()

        async with self.session_factory() as db:
            repo = DocumentRepository(db)
            document = await repo.find_by_id(reminder.document_id)
            if document is None:
                self.clear_document_reminders(reminder.document_id)
                reminder.outcome = "document_not_found"
                return ReminderOutcome(document_id=reminder.document_id, skipped_reason="document_not_found")

            outcome = await self._refresh_and_send(
                repo, document, reminder.message, reminder.reminder_type.value, source="scheduler"
            )
            reminder.outcome = "sent" if outcome.sent else (outcome.skipped_reason or "failed")

            if outcome.skipped_reason == "not_eligible":
                return outcome

            next_fire = self._finish(reminder)
            if document.next_reminder_at != next_fire:
                document.next_reminder_at = next_fire
                await repo.save(document)
            return outcome

    async def send_reminder_now(self, document_id: str, message: Optional[str] = None) -> Optional[ReminderOutcome]:
        """Ad-hoc reminder outside any plan. None if the document is unknown."""
        async with self.session_factory() as db:
            repo = DocumentRepository(db)
            document = await repo.find_by_id(document_id)
            if document is None:
                return None
            return await self._refresh_and_send(repo, document, message, ReminderType.reminder.value, source="api")

    async def _refresh_and_send(
        self,
        repo: DocumentRepository,
        document: Document,
        message: Optional[str],
        reminder_type: str,
        source: str,
    ) -> ReminderOutcome:
        result = ReminderOutcome(document_id=document.id, reminder_type=reminder_type)

        outcome = await self.status_sync.reconcile_loaded(repo, document, source=source)
        if outcome.skipped_reason == SkipReason.rate_limited:
            logger.warning(f"Reminder for document {document.id} skipped: provider rate limited")
            result.skipped_reason = "rate_limited"
            return result
        if not outcome.ok:
            logger.error(
                f"Reminder for document {document.id} skipped: status refresh failed "
                f"({outcome.skipped_reason or outcome.error})"
            )
            result.skipped_reason = "status_unavailable"
            result.error = outcome.error
            return result

        snapshot = outcome.snapshot
        if not self._eligible(document, snapshot):
            logger.info(
                f"Document {document.id} no longer awaiting signatures ({document.status}, agreement "
                f"{snapshot.status}); clearing reminders"
            )
            self.clear_document_reminders(document.id)
            if document.next_reminder_at is not None:
                document.next_reminder_at = None
                await repo.save(document)
            result.skipped_reason = "not_eligible"
            return result

        sequential = is_sequential(snapshot) if snapshot.has_participant_data else document.is_sequential
        targets = []
        for target in select_reminder_targets(snapshot, sequential):
            recipient = document.recipient_by_email(target.email)
            if recipient is not None and recipient.status == RecipientStatus.signed.value:
                continue
            targets.append(target)
        if not targets:
            logger.info(f"Document {document.id}: nobody currently needs a reminder")
            result.skipped_reason = "no_targets"
            return result

        if self.guard.is_limited():
            logger.warning(f"Reminder for document {document.id} skipped: provider rate limited")
            result.skipped_reason = "rate_limited"
            return result

        text = message or build_reminder_message(ReminderType.reminder, sequential)
        member_ids = [t.member_id for t in targets]
        try:
            token = await self.client.get_access_token()
            await self.client.send_reminder(token, document.remote_agreement_id, member_ids, text)
        except RemoteRateLimitedError:
            logger.warning(f"Reminder for document {document.id} rejected by provider rate limit")
            result.skipped_reason = "rate_limited"
            return result
        except RemoteProviderError as e:
            logger.error(f"Reminder for document {document.id} failed: {type(e).__name__}: {e}")
            repo.add_event(
                document,
                DocumentEventAction.reminder_failed.value,
                f"Reminder failed: {type(e).__name__}",
                details={"error": str(e), "member_ids": member_ids, "reminder_type": reminder_type},
                source=source,
            )
            await repo.save(document)
            result.error = f"{type(e).__name__}: {e}"
            return result

        now = self.clock()
        for target in targets:
            recipient = document.recipient_by_email(target.email)
            if recipient is None:
                continue
            new_value = advance(recipient.last_reminder_sent, now)
            if new_value is not None:
                recipient.last_reminder_sent = new_value
        new_value = advance(document.last_reminder_sent, now)
        if new_value is not None:
            document.last_reminder_sent = new_value
        document.reminder_count = (document.reminder_count or 0) + 1
        repo.add_event(
            document,
            DocumentEventAction.reminder_sent.value,
            f"Sent {reminder_type} reminder to {len(targets)} participant(s)",
            details={
                "reminder_type": reminder_type,
                "member_ids": member_ids,
                "emails": [t.email for t in targets],
            },
            source=source,
        )
        await repo.save(document)
        logger.info(f"Sent {reminder_type} reminder for document {document.id} to {len(targets)} participant(s)")

        result.sent = True
        result.targets = targets
        return result

    # Status

    def get_reminder_status(self, document_id: str) -> dict:
        plan = self.get_plan(document_id)
        if plan is None:
            return {"document_id": document_id, "scheduled": False, "count": 0, "strategy": None, "next_reminder": None}
        return {"scheduled": True, **plan.to_dict()}

    def list_scheduled_reminders(self) -> list[dict]:
        with self._lock:
            plans = list(self._plans.values())
        return [plan.to_dict() for plan in plans]

    # Sweep

    async def sweep_active_documents(self) -> dict:
        """Reconcile every active document; clear finished plans, rebuild missing auto plans.

        Each document gets its own session so a failed write on one row
        never poisons the rest of the sweep.
        """
        logger.info("Starting active document sweep...")
        summary = {"checked": 0, "changed": 0, "cleared": 0, "scheduled": 0, "skipped": 0, "errors": 0}

        async with self.session_factory() as db:
            documents, _ = await DocumentRepository(db).find(
                statuses=ACTIVE_DOCUMENT_STATUSES, with_agreement=True, page_size=500
            )
            document_ids = [document.id for document in documents]
        logger.info(f"Found {len(document_ids)} active documents to check")

        for document_id in document_ids:
            summary["checked"] += 1
            try:
                await self._sweep_document(document_id, summary)
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Error sweeping document {document_id}: {e}", exc_info=True)

        logger.info(
            f"Sweep complete. Checked: {summary['checked']}, changed: {summary['changed']}, "
            f"cleared: {summary['cleared']}, scheduled: {summary['scheduled']}, errors: {summary['errors']}"
        )
        return summary

    async def _sweep_document(self, document_id: str, summary: dict) -> None:
        async with self.session_factory() as db:
            repo = DocumentRepository(db)
            document = await repo.find_by_id(document_id)
            if document is None:
                summary["skipped"] += 1
                return

            outcome = await self.status_sync.reconcile_loaded(repo, document, source="sweep")
            if not outcome.ok:
                summary["skipped"] += 1
                return
            if outcome.changes:
                summary["changed"] += 1

            if not self._eligible(document, outcome.snapshot):
                if self.clear_document_reminders(document.id):
                    summary["cleared"] += 1
                return

            if document.auto_reminders and not self.has_plan(document.id):
                self._create_plan(
                    repo, document, outcome.snapshot, ReminderOptions.from_document(document), source="sweep"
                )
                await repo.save(document)
                summary["scheduled"] += 1
