"""Exchange rate lookup used to quote balances in USD."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional, Protocol

import httpx

from wallet.config import settings
from wallet.http_client import (
    AsyncCircuitBreaker,
    CircuitBreakerOpenError,
    async_http_client,
    breaker_from_settings,
    request_with_retries,
)

logger = logging.getLogger(__name__)


class RateProvider(Protocol):
    async def rate(self) -> float:
        """Local currency units per 1 USD. Never raises."""


def convert(amount_minor: int, rate: float) -> float:
    if rate <= 0:
        return 0.0
    return round(amount_minor / rate, 2)


class FixedRateProvider:
    def __init__(self, value: float | None = None) -> None:
        self.value = settings.RATE_FALLBACK if value is None else value

    async def rate(self) -> float:
        return self.value


class ExchangeRateProvider:
    """Reads ``rates.<CURRENCY>`` from a USD-based rate API.

    Any failure, or an implausibly low quote, yields the configured fallback.
    Good answers are cached for ``cache_seconds``.
    """

    def __init__(
        self,
        *,
        url: str | None = None,
        currency: str | None = None,
        fallback: float | None = None,
        min_sane: float | None = None,
        cache_seconds: int | None = None,
        circuit_breaker: AsyncCircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url or settings.RATE_API_URL
        self._currency = (currency or settings.CURRENCY).upper()
        self._fallback = settings.RATE_FALLBACK if fallback is None else fallback
        self._min_sane = settings.RATE_MIN_SANE if min_sane is None else min_sane
        self._cache_seconds = settings.RATE_CACHE_SECONDS if cache_seconds is None else cache_seconds
        self._breaker = circuit_breaker or breaker_from_settings("rates")
        self._transport = transport
        self._clock = clock
        self._cached: Optional[tuple[float, float]] = None
        self._lock = asyncio.Lock()

    async def rate(self) -> float:
        async with self._lock:
            now = self._clock()
            if self._cached is not None and now - self._cached[1] < self._cache_seconds:
                return self._cached[0]
            value = await self._fetch()
            if value is None:
                return self._fallback
            self._cached = (value, now)
            return value

    async def _fetch(self) -> Optional[float]:
        options: dict[str, Any] = {}
        if self._transport is not None:
            options["transport"] = self._transport
        try:
            async with async_http_client(additional_options=options) as client:
                response = await request_with_retries(
                    "GET",
                    self._url,
                    client=client,
                    circuit_breaker=self._breaker,
                    retries=0,
                )
            response.raise_for_status()
            value = float(response.json()["rates"][self._currency])
        except (httpx.HTTPError, CircuitBreakerOpenError, KeyError, TypeError, ValueError) as exc:
            logger.warning("exchange rate lookup failed, using fallback: %s", exc)
            return None
        if value <= self._min_sane:
            logger.warning("exchange rate %s looks wrong, using fallback", value)
            return None
        return value


__all__ = ["ExchangeRateProvider", "FixedRateProvider", "RateProvider", "convert"]
