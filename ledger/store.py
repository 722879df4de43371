"""Versioned object store contract and the in-memory implementation."""

from __future__ import annotations

import asyncio
import itertools
from typing import Dict, Optional, Protocol, Tuple

from ledger.errors import StoreError, StoreUnavailable, VersionConflict
from ledger.models import Versioned


class VersionedObjectStore(Protocol):
    """Key/value store with optimistic concurrency.

    ``read`` returns the raw document and an opaque version token (``None``
    for a missing key). ``write`` only succeeds when ``expected_version`` is
    still current and returns the new token.
    """

    async def read(self, key: str) -> Versioned:
        ...

    async def write(
        self,
        key: str,
        value: str,
        expected_version: Optional[str],
        note: str,
    ) -> str:
        ...


class InMemoryVersionedStore:
    """Process-local store used in tests and with ``STORE_BACKEND=memory``."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._counter = itertools.count(1)
        self._data: Dict[str, Tuple[str, str]] = {}
        self._lock = asyncio.Lock()
        self._pending_failures: list[StoreError] = []
        self.writes: list[Tuple[str, str]] = []
        self.reads = 0
        for key, value in (initial or {}).items():
            self._data[key] = (value, self._next_version())

    def _next_version(self) -> str:
        return f"v{next(self._counter)}"

    def fail_next_writes(self, count: int = 1, exc: StoreError | None = None) -> None:
        """Make the next ``count`` writes raise ``exc`` (``StoreUnavailable`` by default)."""

        for _ in range(count):
            self._pending_failures.append(exc or StoreUnavailable("injected failure"))

    def bump(self, key: str, value: str) -> str:
        """Overwrite a key out of band, as a concurrent writer would."""

        version = self._next_version()
        self._data[key] = (value, version)
        return version

    def peek(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        return entry[0] if entry else None

    async def read(self, key: str) -> Versioned:
        async with self._lock:
            self.reads += 1
            entry = self._data.get(key)
        if entry is None:
            return Versioned(value=None, version=None)
        return Versioned(value=entry[0], version=entry[1])

    async def write(
        self,
        key: str,
        value: str,
        expected_version: Optional[str],
        note: str,
    ) -> str:
        async with self._lock:
            if self._pending_failures:
                raise self._pending_failures.pop(0)
            current = self._data.get(key)
            current_version = current[1] if current else None
            if current_version != expected_version:
                raise VersionConflict(key, expected_version)
            version = self._next_version()
            self._data[key] = (value, version)
            self.writes.append((key, note))
            return version


__all__ = ["InMemoryVersionedStore", "VersionedObjectStore"]
