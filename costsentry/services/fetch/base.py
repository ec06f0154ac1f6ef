"""
Fetch client base classes.

A fetch client turns (account, credentials, period) into the raw envelope the
matching adapter understands. Failures are classified into the engine's
error taxonomy here, once, so the orchestrator never sees provider SDK errors:

- AuthenticationError: 401/403 or missing credential fields. Never retried.
- TransientFetchError: timeouts, connection errors, 429 and 5xx. Retried.
- ProviderRequestError: any other 4xx. Never retried.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from costsentry.core.concurrency import RateLimiter
from costsentry.core.config import Settings, get_settings
from costsentry.core.exceptions import (
    AuthenticationError,
    ProviderRequestError,
    TransientFetchError,
)
from costsentry.core.metrics import FETCH_RETRIES
from costsentry.schemas.costs import Account
from costsentry.services.providers.registry import get_provider

logger = structlog.get_logger()

T = TypeVar("T")


def validate_credentials(provider_id: str, credentials: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Fail fast on incomplete credentials. Names the missing keys, never the values."""
    spec = get_provider(provider_id)
    credentials = dict(credentials or {})
    missing = [f for f in spec.credential_fields if not credentials.get(f)]
    if missing:
        raise AuthenticationError(
            f"Missing {spec.name} credentials: {', '.join(missing)}",
            details={"provider_id": spec.id, "missing_fields": missing},
        )
    return credentials


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def raise_for_provider_status(provider_id: str, response: httpx.Response) -> None:
    """Map an HTTP error status onto the fetch error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    details = {"provider_id": provider_id, "status_code": status}
    if status in (401, 403):
        raise AuthenticationError(f"{provider_id} rejected the credentials (HTTP {status})", details=details)
    if status == 429 or status >= 500:
        raise TransientFetchError(
            f"{provider_id} returned HTTP {status}",
            status_code=status,
            retry_after=_retry_after(response),
            details=details,
        )
    raise ProviderRequestError(f"{provider_id} returned HTTP {status}", status_code=status, details=details)


class wait_retry_after(wait_base):
    """Wait at least the provider's Retry-After hint, falling back to ``fallback``, capped at ``max_wait``."""

    def __init__(self, fallback: wait_base, max_wait: float):
        self.fallback = fallback
        self.max_wait = max_wait

    def __call__(self, retry_state: RetryCallState) -> float:
        wait = self.fallback(retry_state)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(exc, "retry_after", None)
        if hint:
            wait = max(wait, hint)
        return min(wait, self.max_wait)


class FetchClient(ABC):
    """Retrieves raw billing data for one provider."""

    provider_id: str = ""

    def __init__(self, settings: Optional[Settings] = None, rate_limiter: Optional[RateLimiter] = None):
        self.settings = settings or get_settings()
        self.rate_limiter = rate_limiter or RateLimiter(self.settings.PROVIDER_RATE_LIMIT_PER_SECOND)

    async def fetch(
        self,
        account: Account,
        credentials: Optional[Mapping[str, Any]],
        period_start: date,
        period_end: date,
    ) -> Dict[str, Any]:
        creds = validate_credentials(self.provider_id, credentials)
        raw = await self._fetch(account, creds, period_start, period_end)
        raw.setdefault("period_start", period_start.isoformat())
        return raw

    @abstractmethod
    async def _fetch(
        self,
        account: Account,
        credentials: Dict[str, Any],
        period_start: date,
        period_end: date,
    ) -> Dict[str, Any]:
        """Provider-specific retrieval. Must raise only taxonomy errors."""

    def _log_retry(self, retry_state: RetryCallState) -> None:
        FETCH_RETRIES.labels(provider=self.provider_id).inc()
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "provider_fetch_retrying",
            provider=self.provider_id,
            attempt=retry_state.attempt_number,
            error=str(exc) if exc else None,
            wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(TransientFetchError),
            wait=wait_retry_after(
                wait_random_exponential(
                    multiplier=self.settings.FETCH_BACKOFF_MIN_SECONDS,
                    max=self.settings.FETCH_BACKOFF_MAX_SECONDS,
                ),
                max_wait=self.settings.FETCH_BACKOFF_MAX_SECONDS,
            ),
            stop=stop_after_attempt(self.settings.FETCH_MAX_ATTEMPTS),
            before_sleep=self._log_retry,
            reraise=True,
        )

    async def call_with_retry(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run one provider call with rate limiting and transient-failure retries."""
        async for attempt in self._retrying():
            with attempt:
                await self.rate_limiter.acquire()
                return await func(*args, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover


class HttpFetchClient(FetchClient):
    """Fetch client for providers that expose a JSON REST billing API."""

    base_url: str = ""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(settings, rate_limiter)
        self.transport = transport

    def http_client(self, headers: Optional[Dict[str, str]] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json", **(headers or {})},
            timeout=self.settings.FETCH_HTTP_TIMEOUT_SECONDS,
            transport=self.transport,
        )

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientFetchError(f"{self.provider_id} request timed out") from e
        except httpx.TransportError as e:
            raise TransientFetchError(f"{self.provider_id} connection failed: {type(e).__name__}") from e

        raise_for_provider_status(self.provider_id, response)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderRequestError(
                f"{self.provider_id} returned a non-JSON body",
                status_code=response.status_code,
            ) from e

    async def get_json(self, client: httpx.AsyncClient, url: str, **kwargs: Any) -> Any:
        return await self.call_with_retry(self._send, client, "GET", url, **kwargs)

    async def post_json(self, client: httpx.AsyncClient, url: str, **kwargs: Any) -> Any:
        return await self.call_with_retry(self._send, client, "POST", url, **kwargs)
