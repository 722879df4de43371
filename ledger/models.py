"""Domain models for the balance ledger."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional


@dataclass(slots=True)
class Account:
    """Balance of a single subject in minor units of the local currency."""

    subject: str
    balance_minor: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Versioned:
    """Value read from a versioned store together with its version token."""

    value: Any
    version: Optional[str]


class AccountMap:
    """In-memory copy of the whole balance document.

    Mutations only touch this copy; the ledger service decides when to commit.
    """

    def __init__(self, accounts: Optional[Dict[str, Account]] = None) -> None:
        self._accounts: Dict[str, Account] = dict(accounts or {})

    def __contains__(self, subject: object) -> bool:
        return subject in self._accounts

    def __iter__(self) -> Iterator[Account]:
        return iter(self._accounts.values())

    def __len__(self) -> int:
        return len(self._accounts)

    def balance(self, subject: str) -> int:
        account = self._accounts.get(subject)
        return account.balance_minor if account else 0

    def ensure(self, subject: str) -> Account:
        account = self._accounts.get(subject)
        if account is None:
            account = Account(subject=subject)
            self._accounts[subject] = account
        return account

    def total(self) -> int:
        return sum(account.balance_minor for account in self._accounts.values())
