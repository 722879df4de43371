import httpx
import pytest

from conftest import FakeClock
from wallet.http_client import AsyncCircuitBreaker
from wallet.rates import ExchangeRateProvider, FixedRateProvider, convert


def _provider(handler, clock=None, **kwargs) -> ExchangeRateProvider:
    return ExchangeRateProvider(
        url="https://rates.test/latest/USD",
        currency="ngn",
        fallback=1600.0,
        min_sane=100.0,
        cache_seconds=300,
        circuit_breaker=AsyncCircuitBreaker(max_failures=5, base_delay=1.0, max_delay=1.0, name="rates"),
        transport=httpx.MockTransport(handler),
        clock=clock or FakeClock(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_reads_currency_rate_and_caches_it() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        return httpx.Response(200, json={"rates": {"NGN": 1550.5, "EUR": 0.9}})

    clock = FakeClock()
    provider = _provider(handler, clock)

    assert await provider.rate() == 1550.5
    assert await provider.rate() == 1550.5
    assert len(calls) == 1

    clock.advance(301)
    await provider.rate()
    assert len(calls) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"rates": {"NGN": 1.0}}),
        httpx.Response(200, json={"rates": {}}),
        httpx.Response(200, text="not json"),
        httpx.Response(404),
    ],
)
async def test_bad_answers_fall_back(response) -> None:
    provider = _provider(lambda request: response)
    assert await provider.rate() == 1600.0


@pytest.mark.asyncio
async def test_network_failure_falls_back_and_is_not_cached() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        if len(calls) == 1:
            raise httpx.ConnectError("offline", request=request)
        return httpx.Response(200, json={"rates": {"NGN": 1700}})

    provider = _provider(handler)

    assert await provider.rate() == 1600.0
    assert await provider.rate() == 1700.0


@pytest.mark.asyncio
async def test_fixed_provider_and_conversion() -> None:
    assert await FixedRateProvider(1600).rate() == 1600
    assert convert(5000, 1600) == 3.12
    assert convert(1000, 0) == 0.0
