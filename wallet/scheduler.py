import logging
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from wallet.config import settings
from wallet.engine import TransactionEngine


def _wrap_job(
    job: Callable[..., Awaitable[Any]],
    *,
    name: str,
    logger: logging.Logger,
) -> Callable[..., Awaitable[Any]]:
    """Wrap coroutine job to log duration and swallow exceptions."""

    @wraps(job)
    async def _inner(*args: Any, **kwargs: Any) -> Any:
        started = time.perf_counter()
        logger.debug("job started", extra={"job": name})
        try:
            result = await job(*args, **kwargs)
        except Exception:
            duration = time.perf_counter() - started
            logger.exception(
                "job failed",
                extra={"job": name, "duration": duration},
            )
            return None

        duration = time.perf_counter() - started
        logger.info(
            "job finished",
            extra={"job": name, "duration": duration},
        )
        return result

    return _inner


def start_scheduler(engine: TransactionEngine) -> AsyncIOScheduler:
    """Run the promo reconciliation pass on a fixed interval."""

    scheduler = AsyncIOScheduler(
        timezone="UTC",
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
    )
    scheduler.add_job(
        _wrap_job(engine.reconcile, name="promo_reconcile", logger=logging.getLogger("scheduler")),
        trigger=IntervalTrigger(minutes=settings.RECONCILE_INTERVAL_MINUTES),
        name="promo_reconcile",
        misfire_grace_time=300,
    )
    scheduler.start()
    return scheduler


__all__ = ["start_scheduler"]
