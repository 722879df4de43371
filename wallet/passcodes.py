"""One-time passcodes that gate withdrawals and purchases."""

from __future__ import annotations

import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Optional

from wallet.config import settings
from wallet.errors import PasscodeRejected, PasscodeThrottled, ValidationError
from wallet.kv import TTLStore
from wallet.metrics import PASSCODE_OUTCOMES
from wallet.notifications import NotificationChannel

logger = logging.getLogger("passcodes")


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    NOT_FOUND = "not_found"
    WRONG_CODE = "wrong_code"
    EXPIRED = "expired"
    LOCKED_OUT = "locked_out"


class Purpose(str, Enum):
    WITHDRAW = "withdraw"
    PREMIUM = "premium"
    PROMO = "promo"


_PURPOSE_LABELS = {
    Purpose.WITHDRAW: "withdrawal",
    Purpose.PREMIUM: "premium purchase",
    Purpose.PROMO: "promo unlock",
}


@dataclass(slots=True)
class PasscodeRecord:
    subject: str
    code: str
    issued_at: float
    expires_at: float
    purpose: Purpose

    def dumps(self) -> str:
        data = asdict(self)
        data["purpose"] = self.purpose.value
        return json.dumps(data, sort_keys=True)

    @classmethod
    def loads(cls, raw: str) -> "PasscodeRecord":
        data = json.loads(raw)
        return cls(
            subject=str(data["subject"]),
            code=str(data["code"]),
            issued_at=float(data["issued_at"]),
            expires_at=float(data["expires_at"]),
            purpose=Purpose(data["purpose"]),
        )


def _generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def _render_passcode(record: PasscodeRecord, ttl_seconds: int) -> str:
    minutes = max(1, ttl_seconds // 60)
    return (
        f"💳 Your passcode for {_PURPOSE_LABELS[record.purpose]} is: <b>{record.code}</b>\n\n"
        "⚠️ Never share this code with anyone.\n"
        f"⏳ Expires in {minutes} minutes."
    )


class PasscodeAuthority:
    """Issues and validates per-subject one-time codes.

    At most one record exists per subject; issuing replaces it. Wrong codes are
    counted and the record is dropped once ``max_attempts`` is reached. An
    accepted code is removed with compare-and-delete so only one of several
    concurrent submissions can win.
    """

    def __init__(
        self,
        kv: TTLStore,
        notifier: Optional[NotificationChannel] = None,
        *,
        ttl_seconds: int | None = None,
        max_attempts: int | None = None,
        retention_seconds: int | None = None,
        cooldown_seconds: int | None = None,
        enforce_purpose: bool | None = None,
        clock: Callable[[], float] = time.time,
        code_factory: Callable[[], str] = _generate_code,
    ) -> None:
        self._kv = kv
        self._notifier = notifier
        self._ttl = settings.PASSCODE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._max_attempts = settings.PASSCODE_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self._retention = (
            settings.PASSCODE_RETENTION_SECONDS if retention_seconds is None else retention_seconds
        )
        self._cooldown = (
            settings.PASSCODE_ISSUE_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        )
        self._enforce_purpose = (
            settings.PASSCODE_ENFORCE_PURPOSE if enforce_purpose is None else enforce_purpose
        )
        self._clock = clock
        self._code_factory = code_factory

    @staticmethod
    def _record_key(subject: str) -> str:
        return f"passcode:{subject}"

    @staticmethod
    def _attempts_key(subject: str) -> str:
        return f"passcode-attempts:{subject}"

    @staticmethod
    def _cooldown_key(subject: str) -> str:
        return f"passcode-cooldown:{subject}"

    async def _throttle(self, subject: str, now: float) -> None:
        if self._cooldown <= 0:
            return
        key = self._cooldown_key(subject)
        if await self._kv.add(key, repr(now), ttl=self._cooldown):
            return
        previous = await self._kv.get(key)
        try:
            retry_after = float(previous) + self._cooldown - now
        except (TypeError, ValueError):
            retry_after = float(self._cooldown)
        logger.info("passcode issue throttled subject=%s", subject)
        raise PasscodeThrottled(max(retry_after, 1.0))

    async def issue(self, subject: str, purpose: Purpose) -> PasscodeRecord:
        subject = str(subject or "").strip()
        if not subject:
            raise ValidationError("Missing Telegram ID")
        purpose = Purpose(purpose)

        now = self._clock()
        await self._throttle(subject, now)

        record = PasscodeRecord(
            subject=subject,
            code=self._code_factory(),
            issued_at=now,
            expires_at=now + self._ttl,
            purpose=purpose,
        )
        keep_for = self._ttl + self._retention
        await self._kv.set(self._record_key(subject), record.dumps(), ttl=keep_for)
        await self._kv.delete(self._attempts_key(subject))
        logger.info("passcode issued subject=%s purpose=%s", subject, purpose.value)

        if self._notifier is not None:
            await self._notifier.send(subject, _render_passcode(record, self._ttl))
        return record

    async def validate(
        self,
        subject: str,
        code: object,
        purpose: Purpose | None = None,
    ) -> Outcome:
        outcome = await self._validate(str(subject or "").strip(), str(code or "").strip(), purpose)
        PASSCODE_OUTCOMES.labels(outcome=outcome.value).inc()
        logger.info("passcode check subject=%s outcome=%s", subject, outcome.value)
        return outcome

    async def _validate(self, subject: str, code: str, purpose: Purpose | None) -> Outcome:
        record_key = self._record_key(subject)
        raw = await self._kv.get(record_key)
        if raw is None:
            return Outcome.NOT_FOUND
        record = PasscodeRecord.loads(raw)

        if self._enforce_purpose and purpose is not None and record.purpose != Purpose(purpose):
            return Outcome.NOT_FOUND

        if self._clock() > record.expires_at:
            return Outcome.EXPIRED

        attempts_key = self._attempts_key(subject)
        if not secrets.compare_digest(record.code.encode(), code.encode()):
            failures = await self._kv.incr(attempts_key, ttl=self._ttl + self._retention)
            if failures >= self._max_attempts:
                await self._kv.pop_if(record_key, raw)
                await self._kv.delete(attempts_key)
                logger.warning("passcode locked out subject=%s", subject)
                return Outcome.LOCKED_OUT
            return Outcome.WRONG_CODE

        if not await self._kv.pop_if(record_key, raw):
            return Outcome.NOT_FOUND
        await self._kv.delete(attempts_key)
        return Outcome.ACCEPTED

    async def require(self, subject: str, code: object, purpose: Purpose | None = None) -> None:
        """Validate and raise :class:`PasscodeRejected` unless the code was accepted."""

        outcome = await self.validate(subject, code, purpose)
        if outcome is not Outcome.ACCEPTED:
            raise PasscodeRejected(outcome)


__all__ = ["Outcome", "PasscodeAuthority", "PasscodeRecord", "Purpose"]
