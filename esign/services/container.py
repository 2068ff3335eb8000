"""Process-wide service objects, built once in the app lifespan and kept on ``app.state.services``."""

import logging
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import async_sessionmaker

from esign.config import Settings
from esign.core.rate_limit import RateLimitGuard
from esign.services.esign_client import RemoteStatusClient, build_esign_client
from esign.services.reconciliation import AgreementCompletionOverride, ReconciliationEngine
from esign.services.recovery import RecoveryVerifier
from esign.services.status_sync import StatusSyncService
from esign.services.webhook_events import WebhookEventHandler
from esign.tasks.reminder_scheduler import ReminderScheduler

logger = logging.getLogger(__name__)


@dataclass
class ESignServices:
    guard: RateLimitGuard
    client: RemoteStatusClient
    status_sync: StatusSyncService
    recovery: RecoveryVerifier
    reminders: ReminderScheduler
    webhooks: WebhookEventHandler

    async def aclose(self) -> None:
        self.reminders.shutdown()
        await self.client.aclose()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker,
    client: Optional[RemoteStatusClient] = None,
    guard: Optional[RateLimitGuard] = None,
    scheduler: Optional[AsyncIOScheduler] = None,
) -> ESignServices:
    guard = guard or RateLimitGuard(default_retry_after=settings.RATE_LIMIT_DEFAULT_RETRY_AFTER_SECONDS)
    client = client or build_esign_client(settings, guard)

    engine = ReconciliationEngine(
        completion_override=AgreementCompletionOverride(enabled=settings.RECONCILE_TRUST_AGREEMENT_COMPLETION),
    )
    status_sync = StatusSyncService(
        client=client,
        guard=guard,
        session_factory=session_factory,
        engine=engine,
        fetch_attempts=settings.RECONCILE_FETCH_ATTEMPTS,
        retry_backoff_seconds=settings.RECONCILE_RETRY_BACKOFF_SECONDS,
    )
    recovery = RecoveryVerifier(
        lookup=client,
        session_factory=session_factory,
        guard=guard,
        freshness_minutes=settings.RECOVERY_FRESHNESS_MINUTES,
        allow_aggressive=settings.RECOVERY_ALLOW_AGGRESSIVE,
    )
    reminders = ReminderScheduler(
        status_sync=status_sync,
        client=client,
        guard=guard,
        session_factory=session_factory,
        scheduler=scheduler,
        sweep_interval_minutes=settings.STATUS_SWEEP_INTERVAL_MINUTES,
        misfire_grace_seconds=settings.REMINDER_MISFIRE_GRACE_SECONDS,
    )
    webhooks = WebhookEventHandler(session_factory=session_factory, status_sync=status_sync, reminders=reminders)

    logger.info(f"Signing provider client: {type(client).__name__}")
    return ESignServices(
        guard=guard,
        client=client,
        status_sync=status_sync,
        recovery=recovery,
        reminders=reminders,
        webhooks=webhooks,
    )
