"""Balance ledger: versioned storage, document codec and the account service."""

from ledger.errors import (
    InsufficientFunds,
    LedgerError,
    LedgerFormatError,
    StoreConflict,
    StoreError,
    StoreUnavailable,
    VersionConflict,
)
from ledger.models import Account, AccountMap, Versioned
from ledger.service import AccountLedger
from ledger.store import InMemoryVersionedStore, VersionedObjectStore

__all__ = [
    "Account",
    "AccountLedger",
    "AccountMap",
    "InMemoryVersionedStore",
    "InsufficientFunds",
    "LedgerError",
    "LedgerFormatError",
    "StoreConflict",
    "StoreError",
    "StoreUnavailable",
    "Versioned",
    "VersionConflict",
    "VersionedObjectStore",
]
