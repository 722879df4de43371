"""Bounded delivery queue for notifications.

Wallet operations never wait on Telegram: a delivery is handed to this queue
and sent by a worker task. When the queue is stopped or full, ``submit``
refuses the delivery and the caller sends it inline instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Optional

from wallet.config import settings
from wallet.metrics import NOTIFICATION_QUEUE_OVERFLOWS

Delivery = Callable[[], Awaitable[None]]

logger = logging.getLogger("notifications")


class NotificationQueue:
    def __init__(self, *, workers: int | None = None, maxsize: int | None = None) -> None:
        self._workers = max(1, settings.NOTIFY_WORKERS if workers is None else workers)
        self._maxsize = settings.NOTIFY_QUEUE_MAX if maxsize is None else maxsize
        self._queue: Optional[asyncio.Queue[Delivery]] = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def started(self) -> bool:
        return self._queue is not None

    def pending(self) -> int:
        return 0 if self._queue is None else self._queue.qsize()

    async def start(self) -> None:
        if self._queue is not None:
            return
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._tasks = [
            asyncio.create_task(self._deliver_forever(self._queue), name=f"notify-{index + 1}")
            for index in range(self._workers)
        ]
        logger.info("notification queue started workers=%s maxsize=%s", self._workers, self._maxsize)

    async def stop(self) -> None:
        """Send whatever is queued, then stop the workers."""

        queue, self._queue = self._queue, None
        if queue is None:
            return
        await queue.join()
        for task in self._tasks:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    def submit(self, delivery: Delivery) -> bool:
        if self._queue is None:
            return False
        try:
            self._queue.put_nowait(delivery)
        except asyncio.QueueFull:
            NOTIFICATION_QUEUE_OVERFLOWS.inc()
            logger.warning("notification queue full (%s pending), sending inline", self._queue.qsize())
            return False
        return True

    async def _deliver_forever(self, queue: asyncio.Queue[Delivery]) -> None:
        while True:
            delivery = await queue.get()
            try:
                await delivery()
            except Exception:  # noqa: BLE001 - one bad delivery must not kill the worker
                logger.exception("notification delivery failed")
            finally:
                queue.task_done()


__all__ = ["Delivery", "NotificationQueue"]
