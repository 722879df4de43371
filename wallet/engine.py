"""User and operator operations on top of the ledger.

Every operation follows the same order: validate input, check the passcode
when one is required, commit the balance change, then notify. Notification
failures never undo a committed change.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from html import escape
from typing import Any, Iterator, Optional

from ledger.errors import InsufficientFunds, LedgerFormatError, StoreConflict, StoreError, StoreUnavailable
from ledger.service import AccountLedger
from wallet.config import settings
from wallet.errors import AlreadyUnlocked, AmountInvalid, IntentNotFound, ValidationError
from wallet.intents import (
    IntentStateError,
    IntentStatus,
    IntentStore,
    PromoIntent,
    PromoReconciler,
    ReconcileReport,
)
from wallet.membership import PromoMembership
from wallet.metrics import OPERATION_LATENCY, OPERATIONS_TOTAL
from wallet.notifications import NotificationChannel
from wallet.passcodes import PasscodeAuthority, PasscodeRecord, Purpose
from wallet.rates import RateProvider, convert

logger = logging.getLogger("audit")


@dataclass(slots=True, frozen=True)
class CostTable:
    premium_cost: int
    owner_share: int
    promo_fee: int

    def __post_init__(self) -> None:
        if self.premium_cost <= 0 or self.promo_fee <= 0 or self.owner_share < 0:
            raise ValueError("costs must be positive")
        if self.owner_share >= self.premium_cost:
            raise ValueError("owner share must be lower than the premium cost")

    @classmethod
    def from_settings(cls) -> "CostTable":
        return cls(
            premium_cost=settings.PREMIUM_COST,
            owner_share=settings.OWNER_SHARE,
            promo_fee=settings.PROMO_FEE,
        )


@dataclass(slots=True)
class BalanceView:
    subject: str
    balance_minor: int
    converted: float
    rate: float


@dataclass(slots=True)
class WithdrawResult:
    subject: str
    amount: int
    previous_balance: int
    balance_minor: int


@dataclass(slots=True)
class PremiumResult:
    buyer: str
    buyer_balance: int
    buyer_converted: float
    owner: Optional[str]
    owner_balance: Optional[int]
    owner_converted: Optional[float]
    cost: int
    cost_converted: float
    owner_earned: int
    owner_earned_converted: float
    rate: float


@dataclass(slots=True)
class PromoUnlockResult:
    subject: str
    balance_minor: int
    token: str
    status: IntentStatus


@dataclass(slots=True)
class AdjustmentResult:
    subject: str
    direction: str
    amount: int
    previous_balance: int
    balance_minor: int
    converted: float
    rate: float


_DIRECTIONS = {
    "credit": "credit",
    "deposit": "credit",
    "debit": "debit",
    "withdraw": "debit",
}


_RESOLUTIONS = {
    "debited": IntentStatus.DEBITED,
    "cancelled": IntentStatus.CANCELLED,
    "refunded": IntentStatus.REFUNDED,
}


def parse_amount(value: Any) -> int:
    """Accept whole positive amounts given as int, integral float or digit string."""

    if isinstance(value, bool) or value is None:
        raise AmountInvalid(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text) if "." in text else int(text)
        except ValueError as exc:
            raise AmountInvalid(value) from exc
    if isinstance(value, float):
        if not value.is_integer():
            raise AmountInvalid(value)
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        raise AmountInvalid(value)
    return value


def _subject(value: Any, label: str = "Telegram ID") -> str:
    subject = str(value).strip() if value is not None else ""
    if not subject:
        raise ValidationError(f"Missing {label}")
    return subject


def _money(amount: int) -> str:
    return f"₦{amount:,}"


class TransactionEngine:
    def __init__(
        self,
        *,
        ledger: AccountLedger,
        passcodes: PasscodeAuthority,
        rates: RateProvider,
        notifier: NotificationChannel,
        membership: PromoMembership,
        intents: IntentStore,
        costs: CostTable | None = None,
        admin_id: int | str | None = None,
        reconciler: PromoReconciler | None = None,
    ) -> None:
        self.ledger = ledger
        self.passcodes = passcodes
        self.rates = rates
        self.notifier = notifier
        self.membership = membership
        self.intents = intents
        self.costs = costs or CostTable.from_settings()
        self.admin_id = settings.ADMIN_ID if admin_id is None else admin_id
        self.reconciler = reconciler or PromoReconciler(
            ledger=ledger,
            membership=membership,
            intents=intents,
            notifier=notifier,
            admin_id=self.admin_id,
        )

    @contextmanager
    def _track(self, operation: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        except Exception as exc:
            OPERATIONS_TOTAL.labels(operation=operation, result=type(exc).__name__).inc()
            raise
        else:
            OPERATIONS_TOTAL.labels(operation=operation, result="ok").inc()
        finally:
            OPERATION_LATENCY.labels(operation=operation).observe(time.perf_counter() - started)

    async def _notify_admin(self, text: str) -> None:
        if self.admin_id:
            await self.notifier.send(self.admin_id, text)

    async def get_balance(self, subject: Any) -> BalanceView:
        with self._track("get_balance"):
            rate = await self.rates.rate()
            subject = str(subject).strip() if subject is not None else ""
            if not subject:
                return BalanceView(subject="", balance_minor=0, converted=0.0, rate=rate)
            balance = await self.ledger.get_balance(subject)
            return BalanceView(subject, balance, convert(balance, rate), rate)

    async def admin_get_balance(self, subject: Any) -> BalanceView:
        return await self.get_balance(_subject(subject))

    async def issue_passcode(self, subject: Any, purpose: Purpose | str = Purpose.WITHDRAW) -> PasscodeRecord:
        with self._track("issue_passcode"):
            try:
                purpose = Purpose(purpose)
            except ValueError as exc:
                raise ValidationError(f"Unknown passcode purpose: {purpose}") from exc
            return await self.passcodes.issue(_subject(subject), purpose)

    async def withdraw(
        self,
        subject: Any,
        amount: Any,
        passcode: Any,
        method: str | None = None,
        details: Any = None,
    ) -> WithdrawResult:
        with self._track("withdraw"):
            subject = _subject(subject)
            amount = parse_amount(amount)
            await self.passcodes.require(subject, passcode, Purpose.WITHDRAW)

            balance = await self.ledger.apply_adjustment(subject, -amount, note=f"Withdraw {subject}")
            previous = balance + amount
            logger.info("withdraw subject=%s amount=%s method=%s", subject, amount, method)

            usd_note = ""
            if method == "crypto":
                usd_note = f" (${convert(amount, await self.rates.rate()):.2f})"
            rendered_details = escape(json.dumps(details, ensure_ascii=False, indent=2))
            await self._notify_admin(
                "💸 <b>WITHDRAW REQUEST</b>\n"
                f"User: <code>{subject}</code>\n"
                f"Method: {escape(str(method or '-'))}\n"
                f"Amount: {_money(amount)}{usd_note}\n"
                f"Before: {_money(previous)}\n"
                f"After:  {_money(balance)}\n"
                f"Details: {rendered_details}"
            )
            await self.notifier.send(
                subject,
                f"✅ Withdrawal request received.\nAmount: {_money(amount)}{usd_note}",
            )
            return WithdrawResult(subject, amount, previous, balance)

    async def premium_purchase(
        self,
        buyer: Any,
        passcode: Any,
        owner: Any = None,
        *,
        buyer_name: str | None = None,
        buyer_username: str | None = None,
        owner_name: str | None = None,
        group_name: str | None = None,
    ) -> PremiumResult:
        with self._track("premium_purchase"):
            buyer = _subject(buyer, "buyer Telegram ID")
            await self.passcodes.require(buyer, passcode, Purpose.PREMIUM)

            owner_id = str(owner).strip() if owner not in (None, "") else ""
            eligible = bool(owner_id) and owner_id != buyer
            cost = self.costs.premium_cost
            share = self.costs.owner_share if eligible else 0

            buyer_balance, owner_balance = await self.ledger.apply_split(
                buyer,
                cost,
                owner_id if eligible else None,
                share if eligible else None,
                note=f"Premium purchase: buyer={buyer}" + (f" owner={owner_id}" if eligible else ""),
            )
            logger.info("premium purchase buyer=%s owner=%s", buyer, owner_id if eligible else "-")

            rate = await self.rates.rate()
            result = PremiumResult(
                buyer=buyer,
                buyer_balance=buyer_balance,
                buyer_converted=convert(buyer_balance, rate),
                owner=owner_id if eligible else None,
                owner_balance=owner_balance,
                owner_converted=convert(owner_balance, rate) if owner_balance is not None else None,
                cost=cost,
                cost_converted=convert(cost, rate),
                owner_earned=share,
                owner_earned_converted=convert(share, rate),
                rate=rate,
            )
            await self._announce_premium(result, buyer_name, buyer_username, owner_name, group_name)
            return result

    async def _announce_premium(
        self,
        result: PremiumResult,
        buyer_name: str | None,
        buyer_username: str | None,
        owner_name: str | None,
        group_name: str | None,
    ) -> None:
        name = escape(buyer_name or result.buyer)
        group = escape(group_name or "a group")
        await self.notifier.send(
            result.buyer,
            "🎉 <b>You are now Premium!</b>\n\n"
            f"💰 {_money(result.cost)} deducted.\n"
            f"💳 New balance: {_money(result.buyer_balance)} (${result.buyer_converted})\n\n"
            f"Enjoy your upgrade, {name}!",
        )
        if result.owner is not None:
            await self.notifier.send(
                result.owner,
                "💰 <b>Earnings Alert!</b>\n\n"
                f"{name} bought Premium in your group <b>{group}</b>.\n"
                f"You earned {_money(result.owner_earned)} 🎉\n"
                f"💳 New balance: {_money(result.owner_balance or 0)} (${result.owner_converted})",
            )
            owner_line = (
                f"🏠 Group: {escape(group_name or 'N/A')}\n"
                f"👑 Owner: {escape(owner_name or result.owner)} (<code>{result.owner}</code>)\n"
                f"💵 Owner earned: {_money(result.owner_earned)} (${result.owner_earned_converted})"
            )
        else:
            owner_line = "🌐 Direct purchase (no group)"
        await self._notify_admin(
            "⭐ <b>PREMIUM PURCHASE</b>\n"
            f"👤 {name} (@{escape(buyer_username or 'N/A')})\n"
            f"🆔 Buyer ID: <code>{result.buyer}</code>\n"
            f"💰 Paid: {_money(result.cost)} (${result.cost_converted})\n"
            f"💳 Buyer balance: {_money(result.buyer_balance)} (${result.buyer_converted})\n"
            f"{owner_line}"
        )

    async def promo_unlock(self, subject: Any, passcode: Any) -> PromoUnlockResult:
        with self._track("promo_unlock"):
            subject = _subject(subject)
            await self.passcodes.require(subject, passcode, Purpose.PROMO)

            fee = self.costs.promo_fee
            if await self.membership.contains(subject):
                raise AlreadyUnlocked(subject)
            if await self.intents.open_for(subject) is not None:
                raise AlreadyUnlocked(subject)
            available = await self.ledger.get_balance(subject)
            if available < fee:
                raise InsufficientFunds(subject, fee, available)

            intent = await self.intents.create(subject, fee)
            try:
                balance = await self.ledger.apply_adjustment(
                    subject, -fee, note=f"Promo unlock {intent.id}"
                )
            except (InsufficientFunds, StoreConflict, LedgerFormatError):
                await self.intents.transition(intent.id, IntentStatus.CANCELLED)
                raise
            except StoreUnavailable:
                logger.error("promo debit outcome unknown intent=%s subject=%s", intent.id, subject)
                raise

            status = IntentStatus.DEBITED
            try:
                await self.intents.transition(intent.id, IntentStatus.DEBITED)
                await self.membership.add(subject, note=f"Promo unlock {intent.id}")
                await self.intents.transition(intent.id, IntentStatus.COMPLETED)
                status = IntentStatus.COMPLETED
            except StoreError as exc:
                logger.warning("promo unlock left for reconciliation intent=%s: %s", intent.id, exc)

            await self.notifier.send(
                subject,
                "🟢 <b>Promo unlocked!</b>\n\n"
                f"💰 {_money(fee)} deducted.\n"
                f"💳 New balance: {_money(balance)}",
            )
            await self._notify_admin(
                "🟢 <b>PROMO UNLOCK</b>\n"
                f"User: <code>{subject}</code>\n"
                f"Fee: {_money(fee)}\n"
                f"Intent: <code>{intent.id}</code> ({status.value})"
            )
            return PromoUnlockResult(subject, balance, intent.id, status)

    async def admin_adjustment(self, subject: Any, amount: Any, direction: str) -> AdjustmentResult:
        with self._track("admin_adjustment"):
            subject = _subject(subject)
            amount = parse_amount(amount)
            normalized = _DIRECTIONS.get(str(direction or "").strip().lower())
            if normalized is None:
                raise ValidationError(f"Unknown adjustment type: {direction}")

            delta = amount if normalized == "credit" else -amount
            balance = await self.ledger.apply_adjustment(
                subject, delta, note=f"Admin {normalized} for {subject}"
            )
            previous = balance - delta
            logger.info("admin %s subject=%s amount=%s", normalized, subject, amount)

            rate = await self.rates.rate()
            await self._notify_admin(
                "🛠 <b>ADMIN ACTION</b>\n"
                f"User: <code>{subject}</code>\n"
                f"Action: {normalized.upper()}\n"
                f"Amount: {_money(amount)} (${convert(amount, rate)})\n"
                f"Before: {_money(previous)}\n"
                f"After:  {_money(balance)} (${convert(balance, rate)})"
            )
            if normalized == "credit":
                headline = "💰 <b>Deposit Received!</b>"
                verb = "credited to"
            else:
                headline = "💸 <b>Balance Updated</b>"
                verb = "deducted from"
            await self.notifier.send(
                subject,
                f"{headline}\n\n"
                f"✅ {_money(amount)} (${convert(amount, rate)}) has been {verb} your account.\n"
                f"💳 New Balance: {_money(balance)} (${convert(balance, rate)})",
            )
            return AdjustmentResult(
                subject=subject,
                direction=normalized,
                amount=amount,
                previous_balance=previous,
                balance_minor=balance,
                converted=convert(balance, rate),
                rate=rate,
            )

    async def list_members(self) -> list[str]:
        return await self.membership.members()

    async def add_member(self, subject: Any) -> bool:
        with self._track("add_member"):
            subject = _subject(subject)
            added = await self.membership.add(subject, note=f"Admin promo add {subject}")
            logger.info("admin promo add subject=%s added=%s", subject, added)
            return added

    async def remove_member(self, subject: Any) -> list[str]:
        with self._track("remove_member"):
            subject = _subject(subject)
            remaining = await self.membership.remove(subject)
            logger.info("admin promo remove subject=%s", subject)
            return remaining

    async def submit_promo_proof(
        self,
        subject: Any,
        image: Any,
        *,
        kind: str | None = None,
        name: str | None = None,
        username: str | None = None,
        method: str | None = None,
        whatsapp: str | None = None,
        call: str | None = None,
    ) -> None:
        with self._track("submit_promo_proof"):
            subject = _subject(subject)
            if not isinstance(image, str) or not image.strip():
                raise ValidationError("Missing image")
            label = "TASK" if kind == "task" else "PAYMENT"
            caption = (
                f"<b>🟢 PROMO {label} SUBMISSION</b>\n"
                f"Name: {escape(name or '-')}\n"
                f"Username: {escape(username or '-')}\n"
                f"ID: {subject}\n"
                f"Method: {escape(method or 'Task')}\n"
                f"WhatsApp: {escape(whatsapp or 'N/A')}\n"
                f"Call: {escape(call or 'N/A')}\n"
                "Status: Pending review by admin"
            )
            if self.admin_id:
                await self.notifier.send_photo(self.admin_id, image, caption)
            await self.notifier.send(
                subject,
                f"✅ Your {escape(kind or 'payment')} submission has been received. "
                "Admin will review it shortly.",
            )

    async def list_intents(self, status: Any = None) -> list[PromoIntent]:
        intents = await self.intents.all()
        if status in (None, ""):
            return intents
        try:
            wanted = IntentStatus(str(status).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Unknown intent status: {status}") from exc
        return [intent for intent in intents if intent.status is wanted]

    async def resolve_intent(self, intent_id: Any, resolution: Any) -> PromoIntent:
        """Operator decision for an intent parked in ``needs_review``.

        ``debited`` hands the intent back to reconciliation, which grants
        access or refunds. ``cancelled`` records that the fee never left the
        balance. ``refunded`` records that the fee is already back.
        """

        with self._track("resolve_intent"):
            intent_id = _subject(intent_id, "intent id")
            status = _RESOLUTIONS.get(str(resolution or "").strip().lower())
            if status is None:
                raise ValidationError(f"Unknown resolution: {resolution}")
            intent = await self.intents.get(intent_id)
            if intent is None:
                raise IntentNotFound(intent_id)
            if intent.status is not IntentStatus.NEEDS_REVIEW:
                raise ValidationError(f"Intent {intent_id} is {intent.status.value}, not needs_review")
            try:
                intent = await self.intents.transition(intent_id, status, note="resolved by admin")
            except IntentStateError as exc:
                raise ValidationError(str(exc)) from exc
            logger.info("promo intent resolved id=%s status=%s", intent_id, status.value)
            await self._notify_admin(
                "🧾 <b>PROMO INTENT RESOLVED</b>\n"
                f"User: <code>{intent.subject}</code>\n"
                f"Intent: <code>{intent_id}</code>\n"
                f"Status: {status.value}"
            )
            return intent

    async def reconcile(self) -> ReconcileReport:
        with self._track("reconcile"):
            return await self.reconciler.run()


__all__ = [
    "AdjustmentResult",
    "BalanceView",
    "CostTable",
    "PremiumResult",
    "PromoUnlockResult",
    "TransactionEngine",
    "WithdrawResult",
    "parse_amount",
]
