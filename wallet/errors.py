"""Errors raised by the transaction engine and its collaborators."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ledger.errors import InsufficientFunds, LedgerError, StoreError

if TYPE_CHECKING:
    from wallet.passcodes import Outcome


class WalletError(Exception):
    """Base class for request-level failures."""


class ValidationError(WalletError):
    """Malformed or missing input."""


class AmountInvalid(ValidationError):
    def __init__(self, amount: object) -> None:
        self.amount = amount
        super().__init__(f"amount must be a positive whole number, got {amount!r}")


class AuthorizationError(WalletError):
    """The caller is not allowed to perform the operation."""


class Unauthorized(AuthorizationError):
    """Operator secret missing or wrong."""


class PasscodeRejected(AuthorizationError):
    def __init__(self, outcome: "Outcome") -> None:
        self.outcome = outcome
        super().__init__(f"passcode rejected: {outcome.value}")


class PasscodeThrottled(AuthorizationError):
    def __init__(self, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(f"passcode requested too often, retry in {retry_after:.0f}s")


class AlreadyUnlocked(WalletError):
    def __init__(self, subject: str) -> None:
        self.subject = subject
        super().__init__(f"{subject} already has promo access")


class MemberNotFound(WalletError):
    def __init__(self, subject: str) -> None:
        self.subject = subject
        super().__init__(f"{subject} is not a promo member")


class IntentNotFound(WalletError):
    def __init__(self, intent_id: str) -> None:
        self.intent_id = intent_id
        super().__init__(f"unknown promo intent {intent_id}")


__all__ = [
    "AlreadyUnlocked",
    "AmountInvalid",
    "AuthorizationError",
    "InsufficientFunds",
    "IntentNotFound",
    "LedgerError",
    "MemberNotFound",
    "PasscodeRejected",
    "PasscodeThrottled",
    "StoreError",
    "Unauthorized",
    "ValidationError",
    "WalletError",
]
