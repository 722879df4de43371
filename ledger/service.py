"""Account ledger on top of a versioned object store.

All balances live in a single document. Every mutation reads the document,
applies the change to an in-memory copy and writes it back conditioned on the
version it read. A lost race is retried from a fresh read, and the funds check
runs again on that fresh snapshot.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from prometheus_client import Counter

from ledger.codec import DocumentCodec, accounts_from_data, accounts_to_data, balances_codec
from ledger.errors import InsufficientFunds, StoreConflict, VersionConflict
from ledger.models import Account, AccountMap
from ledger.store import VersionedObjectStore

logger = logging.getLogger("ledger")

T = TypeVar("T")

LEDGER_COMMITS = Counter(
    "ledger_commits_total",
    "Balance document writes that succeeded.",
)
LEDGER_CONFLICTS = Counter(
    "ledger_cas_conflicts_total",
    "Balance document writes rejected because the version moved.",
)

BALANCES_KEY = "balances"


def _debit(accounts: AccountMap, subject: str, amount: int) -> int:
    available = accounts.balance(subject)
    if available < amount:
        raise InsufficientFunds(subject, amount, available)
    account = accounts.ensure(subject)
    account.balance_minor = available - amount
    return account.balance_minor


def _credit(accounts: AccountMap, subject: str, amount: int) -> int:
    account = accounts.ensure(subject)
    account.balance_minor += amount
    return account.balance_minor


async def update_document(
    store: VersionedObjectStore,
    key: str,
    codec: DocumentCodec,
    mutate: Callable[[Any], Tuple[Any, T]],
    note: str,
    *,
    max_attempts: int = 3,
) -> T:
    """Compare-and-swap loop for the smaller JSON documents.

    ``mutate`` receives the decoded document and returns ``(new_data, result)``;
    returning ``None`` as ``new_data`` skips the write.
    """

    for attempt in range(1, max(1, max_attempts) + 1):
        current = await store.read(key)
        data, result = mutate(codec.decode(current.value))
        if data is None:
            return result
        try:
            await store.write(key, codec.encode(data), current.version, note)
        except VersionConflict:
            logger.info("document write conflict key=%s attempt=%s note=%s", key, attempt, note)
            continue
        return result
    raise StoreConflict(key, max_attempts)


class AccountLedger:
    def __init__(
        self,
        store: VersionedObjectStore,
        *,
        key: str = BALANCES_KEY,
        codec: DocumentCodec = balances_codec,
        max_attempts: int = 3,
    ) -> None:
        self._store = store
        self._key = key
        self._codec = codec
        self._max_attempts = max(1, max_attempts)

    async def _snapshot(self) -> Tuple[AccountMap, Optional[str]]:
        current = await self._store.read(self._key)
        return accounts_from_data(self._codec.decode(current.value)), current.version

    async def _commit(self, mutate: Callable[[AccountMap], T], note: str) -> T:
        """Run ``mutate`` on a fresh snapshot and write it back with CAS.

        ``mutate`` raises to abort (nothing is written). ``StoreUnavailable``
        and format errors propagate immediately; only version conflicts retry.
        """

        for attempt in range(1, self._max_attempts + 1):
            accounts, version = await self._snapshot()
            result = mutate(accounts)
            payload = self._codec.encode(accounts_to_data(accounts))
            try:
                await self._store.write(self._key, payload, version, note)
            except VersionConflict:
                LEDGER_CONFLICTS.inc()
                logger.info(
                    "ledger write conflict key=%s attempt=%s/%s note=%s",
                    self._key,
                    attempt,
                    self._max_attempts,
                    note,
                )
                continue
            LEDGER_COMMITS.inc()
            logger.info("ledger commit key=%s note=%s", self._key, note)
            return result
        logger.warning("ledger gave up key=%s note=%s", self._key, note)
        raise StoreConflict(self._key, self._max_attempts)

    async def get_balance(self, subject: str) -> int:
        accounts, _ = await self._snapshot()
        return accounts.balance(subject)

    async def list_accounts(self) -> List[Account]:
        accounts, _ = await self._snapshot()
        return sorted(accounts, key=lambda account: account.subject)

    async def total_balance(self) -> int:
        accounts, _ = await self._snapshot()
        return accounts.total()

    async def apply_adjustment(self, subject: str, delta: int, note: str) -> int:
        """Add ``delta`` (may be negative) to ``subject`` and return the new balance."""

        def mutate(accounts: AccountMap) -> int:
            if delta < 0:
                return _debit(accounts, subject, -delta)
            return _credit(accounts, subject, delta)

        return await self._commit(mutate, note)

    async def apply_split(
        self,
        debit_subject: str,
        debit_amount: int,
        credit_subject: Optional[str] = None,
        credit_amount: Optional[int] = None,
        *,
        note: str,
    ) -> Tuple[int, Optional[int]]:
        """Debit one account and optionally credit another in the same write.

        The credit leg is skipped when there is no credit subject or it is the
        debited subject itself.
        """

        if debit_amount < 0 or (credit_amount is not None and credit_amount < 0):
            raise ValueError("split amounts must not be negative")
        credit_leg = (
            bool(credit_subject) and credit_subject != debit_subject and credit_amount is not None
        )

        def mutate(accounts: AccountMap) -> Tuple[int, Optional[int]]:
            debit_balance = _debit(accounts, debit_subject, debit_amount)
            if not credit_leg:
                return debit_balance, None
            return debit_balance, _credit(accounts, credit_subject, credit_amount)

        return await self._commit(mutate, note)


__all__ = ["AccountLedger", "BALANCES_KEY", "update_document"]
