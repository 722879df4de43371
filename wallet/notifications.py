"""Best-effort Telegram notifications for users and the operator.

Delivery failures never reach the caller: a committed balance change stays
committed whether or not anybody was told about it.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Optional, Protocol

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.types import BufferedInputFile

from wallet.background import NotificationQueue
from wallet.config import settings
from wallet.metrics import NOTIFICATION_FAILURES

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(;[\w=-]+)*;base64,", re.IGNORECASE)
_EXTENSIONS = {"image/png": "png", "image/gif": "gif", "image/webp": "webp"}


class NotificationChannel(Protocol):
    async def send(self, chat_id: str | int, text: str) -> None:
        ...

    async def send_photo(self, chat_id: str | int, image: str, caption: str) -> None:
        ...


def decode_image(image: str) -> BufferedInputFile:
    """Turn a ``data:`` URL or bare base64 string into an uploadable file."""

    payload = image.strip()
    extension = "jpg"
    match = _DATA_URL_RE.match(payload)
    if match:
        extension = _EXTENSIONS.get((match.group("mime") or "").lower(), "jpg")
        payload = payload[match.end():]
    try:
        data = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("image is not valid base64") from exc
    if not data:
        raise ValueError("image is empty")
    return BufferedInputFile(data, filename=f"submission.{extension}")


class NullNotifier:
    """Used when no bot token is configured; records what would be sent."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.photos: list[tuple[str, str]] = []

    async def send(self, chat_id: str | int, text: str) -> None:
        logger.debug("notification skipped, no bot configured: chat=%s", chat_id)
        self.sent.append((str(chat_id), text))

    async def send_photo(self, chat_id: str | int, image: str, caption: str) -> None:
        logger.debug("photo skipped, no bot configured: chat=%s", chat_id)
        self.photos.append((str(chat_id), caption))


class TelegramNotifier:
    """Thin wrapper around aiogram Bot that never raises."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    @property
    def bot(self) -> Bot:
        return self._bot

    async def send(self, chat_id: str | int, text: str) -> None:
        if not chat_id:
            return
        try:
            await self._bot.send_message(int(chat_id), text, parse_mode="HTML")
        except Exception as exc:  # noqa: BLE001 - notifications are best effort
            NOTIFICATION_FAILURES.inc()
            logger.warning("Failed to send notification to %s: %s", chat_id, exc)

    async def send_photo(self, chat_id: str | int, image: str, caption: str) -> None:
        if not chat_id:
            return
        try:
            photo = decode_image(image)
            await self._bot.send_photo(int(chat_id), photo, caption=caption, parse_mode="HTML")
        except Exception as exc:  # noqa: BLE001 - notifications are best effort
            NOTIFICATION_FAILURES.inc()
            logger.warning("Failed to send photo to %s: %s", chat_id, exc)

    async def close(self) -> None:
        await self._bot.session.close()


class QueuedNotifier:
    """Hands deliveries to the queue, or sends inline when it is stopped or full."""

    def __init__(self, channel: NotificationChannel, queue: NotificationQueue | None = None) -> None:
        self._channel = channel
        self._queue = queue

    async def send(self, chat_id: str | int, text: str) -> None:
        async def job() -> None:
            await self._channel.send(chat_id, text)

        if self._queue is None or not self._queue.submit(job):
            await job()

    async def send_photo(self, chat_id: str | int, image: str, caption: str) -> None:
        async def job() -> None:
            await self._channel.send_photo(chat_id, image, caption)

        if self._queue is None or not self._queue.submit(job):
            await job()


def build_channel(token: Optional[str] = None) -> NotificationChannel:
    token = settings.BOT_TOKEN if token is None else token
    if not token:
        logger.warning("BOT_TOKEN is empty, notifications are disabled")
        return NullNotifier()
    bot = Bot(token=token, default=DefaultBotProperties(parse_mode="HTML"))
    return TelegramNotifier(bot)


__all__ = [
    "NotificationChannel",
    "NullNotifier",
    "QueuedNotifier",
    "TelegramNotifier",
    "build_channel",
    "decode_image",
]
