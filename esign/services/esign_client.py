"""
Signing provider API client.

Talks to the provider's REST API (agreements, members, events, reminders,
search). Every call carries an explicit timeout and every failure is
translated into the remote taxonomy in esign.exceptions:

- connection never established            -> RemoteUnavailableError
- timeout / reset / protocol error / 5xx  -> RemoteAmbiguousError
- 429                                     -> RemoteRateLimitedError (recorded in the guard)
- 401 / 403                               -> RemoteAuthError
- 404                                     -> RemoteNotFoundError
- other 4xx                               -> RemoteRejectedError

Agreement payloads are normalized once, here, into RemoteAgreementSnapshot.
"""

import logging
from typing import Any, Optional, Protocol

import httpx

from esign.config import Settings
from esign.core.rate_limit import RateLimitGuard
from esign.exceptions import (
    RemoteAmbiguousError,
    RemoteAuthError,
    RemoteNotFoundError,
    RemoteProviderError,
    RemoteRateLimitedError,
    RemoteRejectedError,
    RemoteUnavailableError,
)
from esign.services.agreement_snapshot import (
    AgreementSummary,
    RemoteAgreementSnapshot,
    parse_agreement_snapshot,
    parse_agreement_summary,
)

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 10.0


class RemoteStatusClient(Protocol):
    """Operations the reconciliation and reminder services need from the provider."""

    async def get_access_token(self) -> str: ...

    async def fetch_agreement_status(self, token: str, agreement_id: str) -> RemoteAgreementSnapshot: ...

    async def send_reminder(
        self, token: str, agreement_id: str, member_ids: list[str], message: str
    ) -> dict: ...

    async def search_agreements_by_name(
        self, token: str, name: str, recipient_email: Optional[str] = None
    ) -> list[AgreementSummary]: ...


def _retry_after_seconds(response: httpx.Response, default: int) -> int:
    header = response.headers.get("Retry-After")
    if header:
        try:
            return max(1, int(float(header)))
        except ValueError:
            pass
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        for key in ("retryAfter", "retry_after"):
            value = body.get(key)
            if isinstance(value, (int, float)) and value > 0:
                return int(value)
    return default


class ESignClient:
    """HTTP client for the signing provider."""

    def __init__(
        self,
        base_url: str,
        integration_key: Optional[str],
        api_user_email: Optional[str] = None,
        guard: Optional[RateLimitGuard] = None,
        read_timeout: float = 30.0,
        write_timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.integration_key = integration_key
        self.api_user_email = api_user_email
        self.guard = guard or RateLimitGuard()
        self.read_timeout = httpx.Timeout(read_timeout, connect=CONNECT_TIMEOUT_SECONDS)
        self.write_timeout = httpx.Timeout(write_timeout, connect=CONNECT_TIMEOUT_SECONDS)
        self._client = httpx.AsyncClient(base_url=base_url, timeout=self.read_timeout, transport=transport)

    @property
    def is_configured(self) -> bool:
        return bool(self.integration_key)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_access_token(self) -> str:
        """Integration keys are used directly as bearer tokens."""
        if not self.integration_key:
            raise RemoteAuthError("Signing provider integration key is not configured")
        return self.integration_key

    def _headers(self, token: str) -> dict:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if self.api_user_email:
            headers["x-api-user"] = f"email:{self.api_user_email}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
        timeout: Optional[httpx.Timeout] = None,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                path,
                headers=self._headers(token),
                params=params,
                json=json_data,
                timeout=timeout or self.read_timeout,
            )
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout, httpx.UnsupportedProtocol,
                httpx.ProxyError) as e:
            logger.error(f"Signing provider unreachable on {method} {path}: {type(e).__name__}")
            raise RemoteUnavailableError(f"{type(e).__name__}: {e}") from e
        except httpx.TransportError as e:
            # Timeouts, resets and protocol errors after the request went out
            logger.error(f"Signing provider {method} {path} outcome unknown: {type(e).__name__}")
            raise RemoteAmbiguousError(f"{type(e).__name__}: {e}") from e

        if response.status_code == 429:
            retry_after = _retry_after_seconds(response, self.guard.default_retry_after)
            self.guard.set_rate_limit(retry_after)
            raise RemoteRateLimitedError(f"Rate limited on {method} {path}", retry_after=retry_after)

        if response.status_code >= 400:
            detail = response.text[:200]
            logger.error(f"Signing provider error {response.status_code} on {method} {path}: {detail}")
            if response.status_code >= 500:
                raise RemoteAmbiguousError(f"HTTP {response.status_code}: {detail}", response.status_code)
            if response.status_code in (401, 403):
                raise RemoteAuthError(f"HTTP {response.status_code}: {detail}", response.status_code)
            if response.status_code == 404:
                raise RemoteNotFoundError(f"HTTP 404: {detail}", 404)
            raise RemoteRejectedError(f"HTTP {response.status_code}: {detail}", response.status_code)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            logger.warning(f"Signing provider returned non-JSON body on {method} {path}")
            return {}

    async def fetch_agreement_status(self, token: str, agreement_id: str) -> RemoteAgreementSnapshot:
        """Agreement with participant sets and, when available, its event log."""
        payload = await self._request(
            "GET", f"agreements/{agreement_id}", token, params={"include": "participantSets"}
        )
        if isinstance(payload, dict) and not payload.get("participantSets"):
            members = await self._request("GET", f"agreements/{agreement_id}/members", token)
            if isinstance(members, dict):
                payload = {**payload, **members}

        events = None
        try:
            events = await self._request("GET", f"agreements/{agreement_id}/events", token)
        except RemoteRateLimitedError:
            raise
        except RemoteProviderError as e:
            logger.info(f"Event log unavailable for agreement {agreement_id}: {type(e).__name__}")

        return parse_agreement_snapshot(payload, events)

    async def send_reminder(self, token: str, agreement_id: str, member_ids: list[str], message: str) -> dict:
        """Create a reminder for the given participant member ids."""
        if not member_ids:
            raise RemoteRejectedError("No reminder recipients supplied")
        body = {
            "recipientParticipantIds": list(member_ids),
            "note": message,
            "status": "ACTIVE",
        }
        result = await self._request(
            "POST", f"agreements/{agreement_id}/reminders", token, json_data=body, timeout=self.write_timeout
        )
        logger.info(f"Reminder sent for agreement {agreement_id} to {len(member_ids)} participant(s)")
        return result if isinstance(result, dict) else {}

    async def search_agreements_by_name(
        self, token: str, name: str, recipient_email: Optional[str] = None
    ) -> list[AgreementSummary]:
        """Agreements visible to the API user matching a name query, optionally by recipient."""
        params = {"query": name}
        if recipient_email:
            params = {"recipientEmail": recipient_email}
        payload = await self._request("GET", "agreements", token, params=params)
        rows = []
        if isinstance(payload, dict):
            rows = payload.get("userAgreementList") or payload.get("agreementAssetsResults") or []
        elif isinstance(payload, list):
            rows = payload
        summaries = [s for s in (parse_agreement_summary(r) for r in rows) if s is not None]
        logger.debug(f"Agreement search returned {len(summaries)} result(s)")
        return summaries


class MockESignClient:
    """In-memory provider for development and tests. Nothing leaves the process."""

    def __init__(self, guard: Optional[RateLimitGuard] = None):
        self.guard = guard or RateLimitGuard()
        self.agreements: dict[str, dict] = {}
        self.search_results: list[dict] = []
        self.sent_reminders: list[dict] = []
        self.calls: list[tuple[str, str]] = []
        self._errors: dict[str, list[Exception]] = {}

    @property
    def is_configured(self) -> bool:
        return True

    def set_agreement(self, agreement_id: str, payload: dict) -> None:
        self.agreements[agreement_id] = {"id": agreement_id, **payload}

    def queue_error(self, operation: str, error: Exception) -> None:
        """Raise ``error`` on the next call to ``operation``."""
        self._errors.setdefault(operation, []).append(error)

    def _maybe_raise(self, operation: str) -> None:
        queued = self._errors.get(operation)
        if queued:
            error = queued.pop(0)
            if isinstance(error, RemoteRateLimitedError):
                self.guard.set_rate_limit(error.retry_after)
            raise error

    async def aclose(self) -> None:
        return None

    async def get_access_token(self) -> str:
        self._maybe_raise("get_access_token")
        return "mock-token"

    async def fetch_agreement_status(self, token: str, agreement_id: str) -> RemoteAgreementSnapshot:
        self.calls.append(("fetch_agreement_status", agreement_id))
        self._maybe_raise("fetch_agreement_status")
        payload = self.agreements.get(agreement_id)
        if payload is None:
            raise RemoteNotFoundError(f"HTTP 404: agreement {agreement_id} not found", 404)
        return parse_agreement_snapshot(payload)

    async def send_reminder(self, token: str, agreement_id: str, member_ids: list[str], message: str) -> dict:
        self.calls.append(("send_reminder", agreement_id))
        self._maybe_raise("send_reminder")
        reminder = {
            "id": f"mock-reminder-{len(self.sent_reminders) + 1}",
            "agreement_id": agreement_id,
            "member_ids": list(member_ids),
            "message": message,
        }
        self.sent_reminders.append(reminder)
        return {"id": reminder["id"]}

    async def search_agreements_by_name(
        self, token: str, name: str, recipient_email: Optional[str] = None
    ) -> list[AgreementSummary]:
        self.calls.append(("search_agreements_by_name", recipient_email or name))
        self._maybe_raise("search_agreements_by_name")
        summaries = []
        for row in self.search_results:
            if recipient_email and recipient_email.lower() not in [e.lower() for e in row.get("recipients", [])]:
                continue
            summary = parse_agreement_summary(row)
            if summary is not None:
                summaries.append(summary)
        return summaries


def build_esign_client(settings: Settings, guard: RateLimitGuard):
    """Real client when credentials exist, otherwise the in-memory mock."""
    if settings.ESIGN_MOCK_MODE:
        logger.warning("ESIGN_MOCK_MODE enabled, using in-memory signing provider")
        return MockESignClient(guard=guard)
    if not settings.ESIGN_INTEGRATION_KEY:
        logger.warning("ESIGN_INTEGRATION_KEY not set, signing provider calls will fail authentication")
    return ESignClient(
        base_url=settings.ESIGN_API_BASE_URL,
        integration_key=settings.ESIGN_INTEGRATION_KEY,
        api_user_email=settings.ESIGN_API_USER_EMAIL,
        guard=guard,
        read_timeout=settings.ESIGN_READ_TIMEOUT_SECONDS,
        write_timeout=settings.ESIGN_WRITE_TIMEOUT_SECONDS,
    )
