"""Ledger and store exceptions."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger domain errors."""


class InsufficientFunds(LedgerError):
    """Raised when a debit would take an account below zero."""

    def __init__(self, subject: str, required: int, available: int) -> None:
        self.subject = subject
        self.required = required
        self.available = available
        super().__init__(f"insufficient balance for {subject}: need {required}, have {available}")

    @property
    def shortfall(self) -> int:
        return max(0, self.required - self.available)


class StoreError(LedgerError):
    """Base class for persistence failures; reported to callers as a server error."""


class VersionConflict(StoreError):
    """The stored version moved since it was read."""

    def __init__(self, key: str, expected: str | None) -> None:
        self.key = key
        self.expected = expected
        super().__init__(f"version conflict on {key} (expected {expected})")


class StoreUnavailable(StoreError):
    """Transport failure talking to the store."""


class StoreConflict(StoreError):
    """Every compare-and-swap attempt lost to a concurrent writer."""

    def __init__(self, key: str, attempts: int) -> None:
        self.key = key
        self.attempts = attempts
        super().__init__(f"gave up on {key} after {attempts} conflicting writes")


class LedgerFormatError(StoreError):
    """The persisted document does not have the expected shape."""


__all__ = [
    "InsufficientFunds",
    "LedgerError",
    "LedgerFormatError",
    "StoreConflict",
    "StoreError",
    "StoreUnavailable",
    "VersionConflict",
]
