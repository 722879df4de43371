"""Service entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from aiohttp import web

from ledger.service import AccountLedger
from ledger.store import InMemoryVersionedStore, VersionedObjectStore
from wallet.background import NotificationQueue
from wallet.config import settings
from wallet.engine import CostTable, TransactionEngine
from wallet.github_store import github_store_from_settings
from wallet.intents import IntentStore
from wallet.kv import InMemoryTTLStore, RedisTTLStore, TTLStore
from wallet.logging_config import resolve_log_level, setup_logging
from wallet.membership import PromoMembership
from wallet.notifications import NotificationChannel, QueuedNotifier, TelegramNotifier, build_channel
from wallet.passcodes import PasscodeAuthority
from wallet.rates import ExchangeRateProvider
from wallet.scheduler import start_scheduler
from wallet.web import create_app

startup_log = logging.getLogger("startup")


@dataclass(slots=True)
class Services:
    engine: TransactionEngine
    kv: TTLStore
    queue: NotificationQueue
    channel: NotificationChannel


def _build_store() -> VersionedObjectStore:
    if settings.use_github:
        startup_log.info("balances stored in GitHub repo=%s file=%s", settings.GITHUB_REPO, settings.BALANCE_FILE)
        return github_store_from_settings()
    startup_log.warning("STORE_BACKEND=memory: balances are lost on restart")
    return InMemoryVersionedStore()


def _build_kv() -> TTLStore:
    if settings.REDIS_URL:
        return RedisTTLStore(settings.REDIS_URL)
    startup_log.info("REDIS_URL not set, passcodes kept in process memory")
    return InMemoryTTLStore()


def build_services() -> Services:
    store = _build_store()
    kv = _build_kv()
    queue = NotificationQueue()
    channel = build_channel()
    notifier = QueuedNotifier(channel, queue)
    attempts = settings.LEDGER_CAS_ATTEMPTS
    engine = TransactionEngine(
        ledger=AccountLedger(store, max_attempts=attempts),
        passcodes=PasscodeAuthority(kv, notifier),
        rates=ExchangeRateProvider(),
        notifier=notifier,
        membership=PromoMembership(store, max_attempts=attempts),
        intents=IntentStore(store, max_attempts=attempts),
        costs=CostTable.from_settings(),
    )
    return Services(engine=engine, kv=kv, queue=queue, channel=channel)


async def _start_site(app: web.Application) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=settings.WEB_HOST, port=settings.WEB_PORT)
    await site.start()
    startup_log.info("Balance server at http://%s:%s", settings.WEB_HOST, settings.WEB_PORT)
    return runner


async def _wait_forever() -> None:
    event = asyncio.Event()
    await event.wait()


async def main() -> None:
    setup_logging(log_dir=settings.LOG_DIR, level=resolve_log_level(settings.LOG_LEVEL))
    startup_log.info("environment=%s store=%s", settings.ENVIRONMENT, settings.STORE_BACKEND)

    services = build_services()
    await services.queue.start()
    runner = await _start_site(create_app(services.engine))
    scheduler = start_scheduler(services.engine)
    try:
        await _wait_forever()
    finally:
        startup_log.info("shutdown sequence")
        scheduler.shutdown(wait=False)
        await runner.cleanup()
        await services.queue.stop()
        await services.kv.close()
        if isinstance(services.channel, TelegramNotifier):
            with contextlib.suppress(Exception):
                await services.channel.close()


if __name__ == "__main__":
    asyncio.run(main())
