"""Outbox for promo unlocks and the pass that settles stuck ones.

A promo unlock touches two documents (balances and the membership list) that
cannot be written together. Each unlock is recorded first as an intent keyed
by a fresh token; the debit and the membership write both carry that token,
and the intent status says how far the unlock got:

    pending -> debited -> completed
    pending -> cancelled            (debit definitely not applied)
    pending -> needs_review         (debit outcome unknown, operator decides)
    debited -> refunding -> refunded (membership write kept failing)
    refunding -> needs_review       (refund outcome unknown)

``refunding`` is a claim: only one pass can move an intent out of
``debited``, so the fee is credited back at most once.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from ledger.codec import json_codec
from ledger.errors import LedgerFormatError, StoreError, StoreUnavailable
from ledger.service import AccountLedger, update_document
from ledger.store import VersionedObjectStore
from wallet.config import settings
from wallet.membership import PromoMembership
from wallet.metrics import PROMO_INTENTS
from wallet.notifications import NotificationChannel

logger = logging.getLogger("audit")

INTENTS_KEY = "promo_intents"


class IntentStatus(str, Enum):
    PENDING = "pending"
    DEBITED = "debited"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDING = "refunding"
    REFUNDED = "refunded"
    NEEDS_REVIEW = "needs_review"


_TRANSITIONS: dict[IntentStatus, set[IntentStatus]] = {
    IntentStatus.PENDING: {IntentStatus.DEBITED, IntentStatus.CANCELLED, IntentStatus.NEEDS_REVIEW},
    IntentStatus.DEBITED: {IntentStatus.COMPLETED, IntentStatus.REFUNDING},
    IntentStatus.REFUNDING: {IntentStatus.REFUNDED, IntentStatus.DEBITED, IntentStatus.NEEDS_REVIEW},
    IntentStatus.NEEDS_REVIEW: {IntentStatus.DEBITED, IntentStatus.CANCELLED, IntentStatus.REFUNDED},
}

TERMINAL_STATUSES = frozenset({IntentStatus.COMPLETED, IntentStatus.CANCELLED, IntentStatus.REFUNDED})
OPEN_STATUSES = frozenset(set(IntentStatus) - TERMINAL_STATUSES)


class IntentStateError(StoreError):
    """Requested status change is not allowed from the current status."""


@dataclass(slots=True)
class PromoIntent:
    id: str
    subject: str
    fee: int
    status: IntentStatus
    created_at: float
    updated_at: float
    attempts: int = 0
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "PromoIntent":
        if not isinstance(data, dict):
            raise LedgerFormatError("intent entry must be an object")
        try:
            return cls(
                id=str(data["id"]),
                subject=str(data["subject"]),
                fee=int(data["fee"]),
                status=IntentStatus(data["status"]),
                created_at=float(data["created_at"]),
                updated_at=float(data["updated_at"]),
                attempts=int(data.get("attempts", 0)),
                note=str(data.get("note", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerFormatError(f"malformed intent entry: {exc}") from exc


def _intents_from_data(data: Any) -> dict[str, PromoIntent]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise LedgerFormatError("intent document must be an object")
    return {key: PromoIntent.from_dict(value) for key, value in data.items()}


def _intents_to_data(intents: dict[str, PromoIntent]) -> dict[str, Any]:
    return {key: intent.to_dict() for key, intent in intents.items()}


class IntentStore:
    def __init__(
        self,
        store: VersionedObjectStore,
        *,
        key: str = INTENTS_KEY,
        max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._key = key
        self._max_attempts = max_attempts
        self._clock = clock

    async def all(self) -> list[PromoIntent]:
        current = await self._store.read(self._key)
        intents = _intents_from_data(json_codec.decode(current.value))
        return sorted(intents.values(), key=lambda intent: intent.created_at)

    async def get(self, intent_id: str) -> Optional[PromoIntent]:
        for intent in await self.all():
            if intent.id == intent_id:
                return intent
        return None

    async def open_for(self, subject: str) -> Optional[PromoIntent]:
        for intent in await self.all():
            if intent.subject == subject and intent.status in OPEN_STATUSES:
                return intent
        return None

    async def create(self, subject: str, fee: int) -> PromoIntent:
        now = self._clock()
        intent = PromoIntent(
            id=uuid.uuid4().hex,
            subject=str(subject),
            fee=fee,
            status=IntentStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

        def mutate(data: Any) -> tuple[dict[str, Any], PromoIntent]:
            intents = _intents_from_data(data)
            intents[intent.id] = intent
            return _intents_to_data(intents), intent

        await update_document(
            self._store,
            self._key,
            json_codec,
            mutate,
            f"Promo intent {intent.id} for {subject}",
            max_attempts=self._max_attempts,
        )
        PROMO_INTENTS.labels(status=intent.status.value).inc()
        logger.info("promo intent created id=%s subject=%s fee=%s", intent.id, subject, fee)
        return intent

    async def transition(
        self,
        intent_id: str,
        status: IntentStatus,
        *,
        note: str | None = None,
        failed_attempt: bool = False,
    ) -> PromoIntent:
        """Move an intent to ``status`` with a compare-and-swap write.

        Staying in the same status is only allowed for ``debited`` with
        ``failed_attempt``, which bumps the retry counter. Everything else
        must be a declared transition, so two passes racing for the same
        move cannot both succeed.
        """

        now = self._clock()

        def mutate(data: Any) -> tuple[dict[str, Any], PromoIntent]:
            intents = _intents_from_data(data)
            intent = intents.get(intent_id)
            if intent is None:
                raise IntentStateError(f"unknown promo intent {intent_id}")
            if status == intent.status:
                allowed = failed_attempt and status is IntentStatus.DEBITED
            else:
                allowed = status in _TRANSITIONS.get(intent.status, set())
            if not allowed:
                raise IntentStateError(
                    f"promo intent {intent_id} cannot go from {intent.status.value} to {status.value}"
                )
            intent.status = status
            intent.updated_at = now
            if failed_attempt:
                intent.attempts += 1
            if note is not None:
                intent.note = note
            return _intents_to_data(intents), intent

        intent = await update_document(
            self._store,
            self._key,
            json_codec,
            mutate,
            f"Promo intent {intent_id} -> {status.value}",
            max_attempts=self._max_attempts,
        )
        PROMO_INTENTS.labels(status=status.value).inc()
        logger.info("promo intent id=%s status=%s", intent_id, status.value)
        return intent

    async def prune(self, before: float) -> list[str]:
        """Drop finished intents last touched before ``before``."""

        def mutate(data: Any) -> tuple[dict[str, Any] | None, list[str]]:
            intents = _intents_from_data(data)
            stale = [
                key
                for key, intent in intents.items()
                if intent.status in TERMINAL_STATUSES and intent.updated_at < before
            ]
            if not stale:
                return None, []
            for key in stale:
                del intents[key]
            return _intents_to_data(intents), stale

        return await update_document(
            self._store,
            self._key,
            json_codec,
            mutate,
            "Prune finished promo intents",
            max_attempts=self._max_attempts,
        )


@dataclass(slots=True)
class ReconcileReport:
    completed: list[str] = field(default_factory=list)
    refunded: list[str] = field(default_factory=list)
    flagged: list[str] = field(default_factory=list)
    retrying: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, list[str]]:
        return asdict(self)

    @property
    def touched(self) -> bool:
        return any((self.completed, self.refunded, self.flagged, self.failed, self.pruned))


class PromoReconciler:
    """Finishes, refunds or flags promo intents that did not complete in-line.

    One failing intent is recorded in ``failed`` and does not stop the pass.
    Refunds first claim the intent (``debited -> refunding``); a pass that
    loses the claim leaves the intent alone.
    """

    def __init__(
        self,
        *,
        ledger: AccountLedger,
        membership: PromoMembership,
        intents: IntentStore,
        notifier: NotificationChannel | None = None,
        admin_id: int | str | None = None,
        refund_after_seconds: float | None = None,
        review_after_seconds: float | None = None,
        retention_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._membership = membership
        self._intents = intents
        self._notifier = notifier
        self._admin_id = settings.ADMIN_ID if admin_id is None else admin_id
        self._refund_after = (
            settings.PROMO_REFUND_AFTER_MINUTES * 60
            if refund_after_seconds is None
            else refund_after_seconds
        )
        self._review_after = (
            settings.PROMO_REVIEW_AFTER_MINUTES * 60
            if review_after_seconds is None
            else review_after_seconds
        )
        self._retention = (
            settings.PROMO_INTENT_RETENTION_DAYS * 86400
            if retention_seconds is None
            else retention_seconds
        )
        self._clock = clock

    async def _notify(self, chat_id: int | str | None, text: str) -> None:
        if self._notifier is not None and chat_id:
            await self._notifier.send(chat_id, text)

    async def run(self) -> ReconcileReport:
        report = ReconcileReport()
        now = self._clock()
        for intent in await self._intents.all():
            try:
                await self._settle(intent, now, report)
            except StoreError as exc:
                logger.error("promo reconcile failed id=%s status=%s: %s", intent.id, intent.status.value, exc)
                report.failed.append(intent.id)
        try:
            report.pruned = await self._intents.prune(now - self._retention)
        except StoreError as exc:
            logger.warning("promo intent pruning failed: %s", exc)
        if report.touched:
            logger.info("promo reconcile %s", report.as_dict())
        return report

    async def _settle(self, intent: PromoIntent, now: float, report: ReconcileReport) -> None:
        age = now - intent.created_at
        if intent.status is IntentStatus.DEBITED:
            await self._settle_debited(intent, age, report)
        elif intent.status is IntentStatus.PENDING and age >= self._review_after:
            await self._flag(intent, "debit outcome unknown", report)
        elif intent.status is IntentStatus.REFUNDING and now - intent.updated_at >= self._review_after:
            # the pass that claimed it stopped before recording the refund
            await self._flag(intent, "refund outcome unknown", report)

    async def _flag(self, intent: PromoIntent, reason: str, report: ReconcileReport) -> None:
        await self._intents.transition(intent.id, IntentStatus.NEEDS_REVIEW, note=reason)
        report.flagged.append(intent.id)
        await self._notify(
            self._admin_id,
            "⚠️ <b>PROMO NEEDS REVIEW</b>\n"
            f"User: <code>{intent.subject}</code>\n"
            f"Intent: <code>{intent.id}</code>\n"
            f"Fee: ₦{intent.fee:,}\n"
            f"Reason: {reason}",
        )

    async def _settle_debited(self, intent: PromoIntent, age: float, report: ReconcileReport) -> None:
        try:
            await self._membership.add(intent.subject, note=f"Promo unlock {intent.id}")
        except StoreError as exc:
            logger.warning("promo membership retry failed id=%s: %s", intent.id, exc)
            if age < self._refund_after:
                await self._intents.transition(
                    intent.id, IntentStatus.DEBITED, note=str(exc), failed_attempt=True
                )
                report.retrying.append(intent.id)
                return
            await self._refund(intent, str(exc), report)
            return

        await self._intents.transition(intent.id, IntentStatus.COMPLETED)
        report.completed.append(intent.id)
        await self._notify(intent.subject, "🟢 Your promo access is now active.")

    async def _refund(self, intent: PromoIntent, reason: str, report: ReconcileReport) -> None:
        try:
            await self._intents.transition(intent.id, IntentStatus.REFUNDING, note=reason)
        except IntentStateError:
            logger.info("promo refund already claimed id=%s", intent.id)
            return

        try:
            balance = await self._ledger.apply_adjustment(
                intent.subject, intent.fee, note=f"Promo refund {intent.id}"
            )
        except StoreUnavailable:
            # credit may have landed; a later pass flags the claim for review
            raise
        except StoreError:
            await self._intents.transition(intent.id, IntentStatus.DEBITED, note="refund not applied")
            raise

        await self._intents.transition(intent.id, IntentStatus.REFUNDED, note=reason)
        report.refunded.append(intent.id)
        await self._notify(
            intent.subject,
            "↩️ <b>Promo unlock refunded</b>\n\n"
            f"₦{intent.fee:,} has been returned to your account.\n"
            f"💳 New balance: ₦{balance:,}",
        )
        await self._notify(
            self._admin_id,
            f"↩️ Promo refund for <code>{intent.subject}</code> (intent <code>{intent.id}</code>)",
        )


__all__ = [
    "INTENTS_KEY",
    "IntentStateError",
    "IntentStatus",
    "IntentStore",
    "OPEN_STATUSES",
    "PromoIntent",
    "PromoReconciler",
    "ReconcileReport",
    "TERMINAL_STATUSES",
]
