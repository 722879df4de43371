"""Outbound HTTP helpers: configured clients, retries and a circuit breaker."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional, TypeVar

import httpx

from wallet.config import settings

T = TypeVar("T")

logger = logging.getLogger(__name__)


class CircuitBreakerOpenError(RuntimeError):
    """Raised when the breaker rejects a call without trying it."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name


class RetryableStatusError(httpx.HTTPError):
    """Marks a response whose status code is worth another attempt."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"Retryable response: {response.status_code}")
        self.request = response.request
        self.response = response


@dataclass
class _BreakerState:
    failures: int = 0
    state: str = "closed"  # closed, open, half-open
    trips: int = 0
    open_until: float = 0.0
    probe_in_flight: bool = False


class AsyncCircuitBreaker:
    """Opens after ``max_failures`` consecutive errors, backing off exponentially."""

    def __init__(
        self,
        *,
        max_failures: int,
        base_delay: float,
        max_delay: float,
        name: str,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_failures <= 0:
            raise ValueError("max_failures must be positive")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("delay values must be non-negative")
        self._max_failures = max_failures
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = clock
        self.name = name
        self._state = _BreakerState()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> str:
        return self._state.state

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        await self._enter()
        try:
            result = await func()
        except Exception:
            await self._on_failure()
            raise
        await self._on_success()
        return result

    async def _enter(self) -> None:
        async with self._lock:
            if self._state.state == "open":
                if self._clock() < self._state.open_until:
                    raise CircuitBreakerOpenError(self.name)
                self._state.state = "half-open"
                self._state.probe_in_flight = False

            if self._state.state == "half-open":
                if self._state.probe_in_flight:
                    raise CircuitBreakerOpenError(self.name)
                self._state.probe_in_flight = True

    async def _on_failure(self) -> None:
        async with self._lock:
            if self._state.state == "half-open":
                self._trip()
                return
            self._state.failures += 1
            if self._state.failures >= self._max_failures:
                self._trip()

    async def _on_success(self) -> None:
        async with self._lock:
            self._state = _BreakerState()

    def _trip(self) -> None:
        self._state.state = "open"
        self._state.failures = self._max_failures
        self._state.trips += 1
        delay = self._base_delay * (2 ** (self._state.trips - 1))
        if self._max_delay:
            delay = min(delay, self._max_delay)
        self._state.open_until = self._clock() + delay
        self._state.probe_in_flight = False
        logger.warning("circuit %s opened for %.1fs", self.name, delay)

    async def reset(self) -> None:
        async with self._lock:
            self._state = _BreakerState()


def breaker_from_settings(name: str) -> AsyncCircuitBreaker:
    return AsyncCircuitBreaker(
        max_failures=settings.HTTP_CIRCUIT_BREAKER_MAX_FAILURES,
        base_delay=settings.HTTP_CIRCUIT_BREAKER_BASE_DELAY,
        max_delay=settings.HTTP_CIRCUIT_BREAKER_MAX_DELAY,
        name=name,
    )


@asynccontextmanager
async def async_http_client(
    *,
    base_url: str | httpx.URL | None = None,
    headers: Optional[dict[str, str]] = None,
    additional_options: Optional[dict[str, Any]] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """Create an AsyncClient with the configured timeouts and proxy."""

    timeout = httpx.Timeout(
        timeout=settings.HTTP_TIMEOUT_TOTAL,
        connect=settings.HTTP_TIMEOUT_CONNECT,
        read=settings.HTTP_TIMEOUT_READ,
        write=settings.HTTP_TIMEOUT_WRITE,
    )
    options: dict[str, Any] = {"timeout": timeout}
    if base_url is not None:
        options["base_url"] = base_url
    if headers:
        options["headers"] = headers
    if settings.HTTP_PROXY_URL:
        options["proxy"] = settings.HTTP_PROXY_URL
    if additional_options:
        options.update(additional_options)

    async with httpx.AsyncClient(**options) as client:
        yield client


async def request_with_retries(
    method: str,
    url: str,
    *,
    client: httpx.AsyncClient,
    circuit_breaker: AsyncCircuitBreaker,
    retries: int | None = None,
    backoff_factor: float | None = None,
    backoff_max: float | None = None,
    retry_statuses: Iterable[int] | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Run a request through the breaker, retrying timeouts and 5xx answers.

    Unset knobs fall back to the ``HTTP_RETRY_*`` settings. Only idempotent
    requests should go through here.
    """

    if retries is None:
        retries = settings.HTTP_RETRY_ATTEMPTS
    if backoff_factor is None:
        backoff_factor = settings.HTTP_RETRY_BACKOFF_INITIAL
    if backoff_max is None:
        backoff_max = settings.HTTP_RETRY_BACKOFF_MAX
    if retry_statuses is None:
        retry_statuses = settings.HTTP_RETRY_STATUS_CODES

    attempts = max(1, int(retries) + 1)
    retryable = set(retry_statuses)
    delay = max(0.0, backoff_factor)
    last_error: Exception | None = None

    async def _attempt() -> httpx.Response:
        response = await client.request(method, url, **kwargs)
        if response.status_code in retryable:
            raise RetryableStatusError(response)
        return response

    for attempt in range(1, attempts + 1):
        try:
            return await circuit_breaker.call(_attempt)
        except CircuitBreakerOpenError:
            raise
        except (RetryableStatusError, httpx.TimeoutException, httpx.NetworkError) as exc:
            last_error = exc
            logger.info("%s %s attempt %s/%s failed: %s", method, url, attempt, attempts, exc)

        if attempt < attempts and delay > 0:
            await asyncio.sleep(delay)
            delay = min(delay * 2, backoff_max) if backoff_max > 0 else delay * 2

    assert last_error is not None
    raise last_error


__all__ = [
    "AsyncCircuitBreaker",
    "CircuitBreakerOpenError",
    "RetryableStatusError",
    "async_http_client",
    "breaker_from_settings",
    "request_with_retries",
]
