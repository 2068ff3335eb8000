"""
Recovery after ambiguous send failures.

When a send to the provider timed out or the connection dropped mid-request,
the agreement may exist remotely even though the local document never
recorded it. The verifier looks for it, and never creates anything: a second
create would send a legal document to the recipients twice.

Strategies run in order and the first match wins:

1. DirectLookupStrategy    - fetch the agreement id already recorded locally
2. RecipientSearchStrategy - the first recipient's agreements, filtered by name
3. NameSearchStrategy      - search by document title, then by original filename

Search matches must have exactly the document's name and a creation time
inside the freshness window; undated matches are rejected. If nothing is
found and the caller permits it, the document is marked sent anyway
("aggressive" recovery).
"""

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from sqlalchemy.ext.asyncio import async_sessionmaker

from esign.core.rate_limit import RateLimitGuard
from esign.exceptions import (
    RemoteAmbiguousError,
    RemoteAuthError,
    RemoteNotFoundError,
    RemoteProviderError,
    RemoteRateLimitedError,
)
from esign.models.document import (
    ACTIVE_DOCUMENT_STATUSES,
    Document,
    DocumentStatus,
    RecipientStatus,
)
from esign.models.document_event import DocumentEventAction
from esign.services.agreement_snapshot import AgreementSummary, RemoteAgreementSnapshot
from esign.services.document_repository import DocumentRepository
from esign.utils.fallback import first_success
from esign.utils.timestamps import ensure_utc, isoformat, utcnow

logger = logging.getLogger(__name__)

RECOVERABLE_STATUSES = frozenset({
    DocumentStatus.processing.value,
    DocumentStatus.ready_for_signature.value,
})

# Tolerated clock skew for agreements dated slightly in our future
FUTURE_SKEW = timedelta(minutes=5)


class AgreementLookup(Protocol):
    """Read-only provider operations. Recovery has no way to create an agreement."""

    async def get_access_token(self) -> str: ...

    async def fetch_agreement_status(self, token: str, agreement_id: str) -> RemoteAgreementSnapshot: ...

    async def search_agreements_by_name(
        self, token: str, name: str, recipient_email: Optional[str] = None
    ) -> list[AgreementSummary]: ...


class RecoveryMethod(str, enum.Enum):
    verification = "verification"
    recipient_search = "recipient_search"
    aggressive = "aggressive"


def is_ambiguous_failure(exc: BaseException) -> bool:
    """Only failures with an unknown remote outcome justify recovery."""
    return isinstance(exc, RemoteAmbiguousError)


@dataclass
class RecoveryContext:
    token: str
    title: Optional[str]
    original_name: Optional[str]
    recorded_agreement_id: Optional[str]
    recipient_emails: list[str]
    now: datetime
    freshness: timedelta

    @property
    def names(self) -> list[str]:
        names = []
        for name in (self.title, self.original_name):
            if name and name.strip() and name.strip() not in names:
                names.append(name.strip())
        return names


@dataclass
class RecoveryMatch:
    agreement_id: str
    method: RecoveryMethod
    strategy: str
    name: Optional[str] = None
    created_at: Optional[datetime] = None
    status: Optional[str] = None


@dataclass
class RecoveryResult:
    success: bool
    message: str
    document: Optional[Document] = None
    agreement_id: Optional[str] = None
    recovery_applied: bool = False
    recovery_method: Optional[str] = None
    verified: bool = False
    already_sent: bool = False
    strategies_tried: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "document_id": self.document.id if self.document else None,
            "status": self.document.status if self.document else None,
            "agreement_id": self.agreement_id,
            "recovery_applied": self.recovery_applied,
            "recovery_method": self.recovery_method,
            "verified": self.verified,
            "already_sent": self.already_sent,
            "strategies_tried": self.strategies_tried,
        }


def is_fresh_name_match(summary: AgreementSummary, ctx: RecoveryContext) -> bool:
    """Exact name and created within the freshness window."""
    if not summary.name or summary.name.strip() not in ctx.names:
        return False
    created = ensure_utc(summary.created_at)
    if created is None:
        logger.debug(f"Rejecting undated agreement {summary.id} '{summary.name}'")
        return False
    if created > ctx.now + FUTURE_SKEW:
        return False
    if ctx.now - created > ctx.freshness:
        logger.info(
            f"Rejecting agreement {summary.id} '{summary.name}': created {isoformat(created)}, "
            f"outside the {ctx.freshness} freshness window"
        )
        return False
    return True


def newest(summaries: list[AgreementSummary]) -> Optional[AgreementSummary]:
    if not summaries:
        return None
    return max(summaries, key=lambda s: ensure_utc(s.created_at))


class RecoveryStrategy(ABC):
    name: str = "strategy"
    method: RecoveryMethod = RecoveryMethod.verification

    @abstractmethod
    async def find(self, lookup: AgreementLookup, ctx: RecoveryContext) -> Optional[RecoveryMatch]:
        """Return a match or None when this strategy has nothing."""

    def _match(self, summary: AgreementSummary) -> RecoveryMatch:
        return RecoveryMatch(
            agreement_id=summary.id,
            method=self.method,
            strategy=self.name,
            name=summary.name,
            created_at=summary.created_at,
            status=summary.status,
        )


class DirectLookupStrategy(RecoveryStrategy):
    name = "direct_lookup"
    method = RecoveryMethod.verification

    async def find(self, lookup: AgreementLookup, ctx: RecoveryContext) -> Optional[RecoveryMatch]:
        if not ctx.recorded_agreement_id:
            return None
        try:
            snapshot = await lookup.fetch_agreement_status(ctx.token, ctx.recorded_agreement_id)
        except RemoteNotFoundError:
            logger.info(f"Recorded agreement {ctx.recorded_agreement_id} does not exist remotely")
            return None
        return RecoveryMatch(
            agreement_id=snapshot.agreement_id or ctx.recorded_agreement_id,
            method=self.method,
            strategy=self.name,
            name=snapshot.name,
            created_at=snapshot.created_at,
            status=snapshot.status,
        )


class RecipientSearchStrategy(RecoveryStrategy):
    name = "recipient_search"
    method = RecoveryMethod.recipient_search

    async def find(self, lookup: AgreementLookup, ctx: RecoveryContext) -> Optional[RecoveryMatch]:
        if not ctx.recipient_emails or not ctx.names:
            return None
        email = ctx.recipient_emails[0]
        results = await lookup.search_agreements_by_name(ctx.token, ctx.names[0], recipient_email=email)
        best = newest([s for s in results if is_fresh_name_match(s, ctx)])
        return self._match(best) if best else None


class NameSearchStrategy(RecoveryStrategy):
    name = "name_search"
    method = RecoveryMethod.verification

    async def find(self, lookup: AgreementLookup, ctx: RecoveryContext) -> Optional[RecoveryMatch]:
        for name in ctx.names:
            results = await lookup.search_agreements_by_name(ctx.token, name)
            best = newest([s for s in results if is_fresh_name_match(s, ctx)])
            if best:
                return self._match(best)
        return None


def default_strategies() -> list[RecoveryStrategy]:
    return [DirectLookupStrategy(), RecipientSearchStrategy(), NameSearchStrategy()]


class RecoveryVerifier:
    """Confirms whether a document whose send failed ambiguously actually reached the provider."""

    def __init__(
        self,
        lookup: AgreementLookup,
        session_factory: async_sessionmaker,
        guard: RateLimitGuard,
        strategies: Optional[list[RecoveryStrategy]] = None,
        freshness_minutes: int = 60,
        allow_aggressive: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.lookup = lookup
        self.session_factory = session_factory
        self.guard = guard
        self.strategies = strategies if strategies is not None else default_strategies()
        self.freshness = timedelta(minutes=freshness_minutes)
        self.allow_aggressive = allow_aggressive
        self.clock = clock

    async def recover_after_failure(
        self,
        document_id: str,
        error: BaseException,
        aggressive: Optional[bool] = None,
    ) -> Optional[RecoveryResult]:
        """Entry point for the send path: recover only if the failure was ambiguous."""
        if not is_ambiguous_failure(error):
            logger.info(f"Document {document_id}: {type(error).__name__} is a clean failure, not recovering")
            return RecoveryResult(success=False, message=f"Send failed: {error}")
        return await self.recover_document(document_id, aggressive=aggressive)

    async def recover_document(
        self,
        document_id: str,
        aggressive: Optional[bool] = None,
        force_check: bool = False,
    ) -> Optional[RecoveryResult]:
        """Locate and adopt a remote agreement for a document. None if the document is unknown."""
        aggressive = self.allow_aggressive if aggressive is None else aggressive

        async with self.session_factory() as db:
            repo = DocumentRepository(db)
            document = await repo.find_by_id(document_id)
            if document is None:
                return None

            already_sent = bool(document.remote_agreement_id) and (
                document.status in ACTIVE_DOCUMENT_STATUSES or document.status == DocumentStatus.completed.value
            )
            if already_sent and not force_check:
                return RecoveryResult(
                    success=True,
                    message="Document already sent for signature",
                    document=document,
                    agreement_id=document.remote_agreement_id,
                    recovery_applied=bool(document.recovery_applied),
                    recovery_method=document.recovery_method,
                    already_sent=True,
                )

            if not already_sent and document.status not in RECOVERABLE_STATUSES:
                return RecoveryResult(
                    success=False,
                    message=f"Document in status {document.status} is not eligible for recovery",
                    document=document,
                )
            if not document.recipients:
                return RecoveryResult(success=False, message="Document has no recipients", document=document)

            if self.guard.is_limited():
                logger.warning(f"Recovery of document {document.id} skipped: provider rate limited")
                return RecoveryResult(
                    success=False,
                    message=f"Signing provider rate limited, retry in {self.guard.time_remaining()}s",
                    document=document,
                )

            try:
                match, tried = await self._search(document)
            except (RemoteRateLimitedError, RemoteAuthError) as e:
                logger.error(f"Recovery of document {document.id} aborted: {type(e).__name__}: {e}")
                return RecoveryResult(success=False, message=f"Recovery aborted: {e}", document=document)

            if already_sent:
                verified = match is not None and match.agreement_id == document.remote_agreement_id
                return RecoveryResult(
                    success=verified,
                    message="Recorded agreement verified" if verified else "Recorded agreement could not be verified",
                    document=document,
                    agreement_id=document.remote_agreement_id,
                    recovery_applied=bool(document.recovery_applied),
                    recovery_method=document.recovery_method,
                    verified=verified,
                    already_sent=True,
                    strategies_tried=tried,
                )

            if match is not None:
                owner = await repo.find_by_agreement_id(match.agreement_id)
                if owner is not None and owner.id != document.id:
                    logger.error(
                        f"Document {document.id}: agreement {match.agreement_id} already belongs to "
                        f"document {owner.id}, not adopting"
                    )
                    match = None

            if match is not None:
                self._mark_sent(document, match.method, match.agreement_id)
                repo.add_event(
                    document,
                    DocumentEventAction.recovery_applied.value,
                    f"Adopted agreement {match.agreement_id} via {match.strategy}",
                    details={
                        "agreement_id": match.agreement_id,
                        "method": match.method.value,
                        "strategy": match.strategy,
                        "agreement_name": match.name,
                        "agreement_created_at": isoformat(match.created_at),
                        "strategies_tried": tried,
                    },
                    source="recovery",
                )
                await repo.save(document)
                logger.info(f"Document {document.id} recovered via {match.strategy}: agreement {match.agreement_id}")
                return RecoveryResult(
                    success=True,
                    message="Document send verified with the signing provider",
                    document=document,
                    agreement_id=match.agreement_id,
                    recovery_applied=True,
                    recovery_method=match.method.value,
                    verified=True,
                    strategies_tried=tried,
                )

            if aggressive:
                self._mark_sent(document, RecoveryMethod.aggressive, None)
                repo.add_event(
                    document,
                    DocumentEventAction.recovery_applied.value,
                    "No remote agreement found; marked sent by aggressive recovery",
                    details={"method": RecoveryMethod.aggressive.value, "strategies_tried": tried},
                    source="recovery",
                )
                await repo.save(document)
                logger.warning(f"Document {document.id} marked sent without verification (aggressive recovery)")
                return RecoveryResult(
                    success=True,
                    message="Document assumed sent; the agreement could not be verified",
                    document=document,
                    recovery_applied=True,
                    recovery_method=RecoveryMethod.aggressive.value,
                    strategies_tried=tried,
                )

            logger.info(f"Document {document.id}: no remote agreement found by {tried}")
            return RecoveryResult(
                success=False,
                message="No matching agreement found with the signing provider",
                document=document,
                strategies_tried=tried,
            )

    async def _search(self, document: Document) -> tuple[Optional[RecoveryMatch], list[str]]:
        token = await self.lookup.get_access_token()
        ctx = RecoveryContext(
            token=token,
            title=document.title,
            original_name=document.original_name,
            recorded_agreement_id=document.remote_agreement_id,
            recipient_emails=[r.email for r in document.active_recipients() if r.email],
            now=self.clock(),
            freshness=self.freshness,
        )
        steps = [(s.name, (lambda s=s: s.find(self.lookup, ctx))) for s in self.strategies]
        outcome = await first_success(steps, propagate=(RemoteRateLimitedError, RemoteAuthError))
        for attempt in outcome.attempts:
            if attempt.error is not None and not isinstance(attempt.error, RemoteProviderError):
                logger.error(f"Recovery strategy {attempt.name} raised {type(attempt.error).__name__}")
        return outcome.value, [a.name for a in outcome.attempts]

    def _mark_sent(self, document: Document, method: RecoveryMethod, agreement_id: Optional[str]) -> None:
        now = self.clock()
        if agreement_id:
            document.remote_agreement_id = agreement_id
        document.status = DocumentStatus.sent_for_signature.value
        document.recovery_applied = True
        document.recovery_method = method.value
        document.recovered_at = now
        document.error_message = None
        for recipient in document.active_recipients():
            recipient.status = RecipientStatus.sent.value
