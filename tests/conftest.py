"""Test configuration helpers."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ledger.codec import balances_codec  # noqa: E402
from ledger.service import AccountLedger  # noqa: E402
from ledger.store import InMemoryVersionedStore  # noqa: E402
from wallet.engine import CostTable, TransactionEngine  # noqa: E402
from wallet.intents import IntentStore, PromoReconciler  # noqa: E402
from wallet.kv import InMemoryTTLStore  # noqa: E402
from wallet.membership import PromoMembership  # noqa: E402
from wallet.notifications import NullNotifier  # noqa: E402
from wallet.passcodes import PasscodeAuthority  # noqa: E402
from wallet.rates import FixedRateProvider  # noqa: E402

ADMIN_ID = 999
PASSCODE = "123456"


def pytest_configure(config: pytest.Config) -> None:
    """Register the asyncio marker for the lightweight runner below."""

    config.addinivalue_line("markers", "asyncio: execute the test inside an event loop")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute ``@pytest.mark.asyncio`` tests without requiring pytest-asyncio."""

    marker = pyfuncitem.get_closest_marker("asyncio")
    if marker is None:
        return None

    func = pyfuncitem.obj
    if not asyncio.iscoroutinefunction(func):
        return None

    funcargs = pyfuncitem.funcargs
    kwargs = {name: funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        loop.run_until_complete(func(**kwargs))
    finally:
        asyncio.set_event_loop(None)
        loop.close()
    return True


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def seed_balances(store: InMemoryVersionedStore, balances: dict[str, int]) -> None:
    store.bump("balances", balances_codec.encode({key: {"ngn": value} for key, value in balances.items()}))


def stored_balances(store: InMemoryVersionedStore) -> dict[str, int]:
    data = balances_codec.decode(store.peek("balances")) or {}
    return {key: entry["ngn"] for key, entry in data.items()}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryVersionedStore:
    return InMemoryVersionedStore()


@pytest.fixture
def kv(clock: FakeClock) -> InMemoryTTLStore:
    return InMemoryTTLStore(clock=clock)


@pytest.fixture
def notifier() -> NullNotifier:
    return NullNotifier()


@pytest.fixture
def passcodes(kv: InMemoryTTLStore, notifier: NullNotifier, clock: FakeClock) -> PasscodeAuthority:
    return PasscodeAuthority(
        kv,
        notifier,
        ttl_seconds=300,
        max_attempts=3,
        retention_seconds=3600,
        cooldown_seconds=0,
        enforce_purpose=True,
        clock=clock,
        code_factory=lambda: PASSCODE,
    )


@pytest.fixture
def ledger(store: InMemoryVersionedStore) -> AccountLedger:
    return AccountLedger(store, max_attempts=3)


@pytest.fixture
def engine(
    store: InMemoryVersionedStore,
    ledger: AccountLedger,
    passcodes: PasscodeAuthority,
    notifier: NullNotifier,
    clock: FakeClock,
) -> TransactionEngine:
    membership = PromoMembership(store)
    intents = IntentStore(store, clock=clock)
    reconciler = PromoReconciler(
        ledger=ledger,
        membership=membership,
        intents=intents,
        notifier=notifier,
        admin_id=ADMIN_ID,
        refund_after_seconds=3600,
        review_after_seconds=1800,
        retention_seconds=7 * 86400,
        clock=clock,
    )
    return TransactionEngine(
        ledger=ledger,
        passcodes=passcodes,
        rates=FixedRateProvider(1600.0),
        notifier=notifier,
        membership=membership,
        intents=intents,
        costs=CostTable(premium_cost=5000, owner_share=2500, promo_fee=1000),
        admin_id=ADMIN_ID,
        reconciler=reconciler,
    )
