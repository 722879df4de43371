"""Promo membership set kept as its own document next to the balances."""

from __future__ import annotations

import logging
from typing import Any

from ledger.codec import members_codec, members_from_data
from ledger.service import update_document
from ledger.store import VersionedObjectStore
from wallet.errors import MemberNotFound

logger = logging.getLogger(__name__)

MEMBERS_KEY = "promo_members"


class PromoMembership:
    def __init__(
        self,
        store: VersionedObjectStore,
        *,
        key: str = MEMBERS_KEY,
        max_attempts: int = 3,
    ) -> None:
        self._store = store
        self._key = key
        self._max_attempts = max_attempts

    async def members(self) -> list[str]:
        current = await self._store.read(self._key)
        return members_from_data(members_codec.decode(current.value))

    async def contains(self, subject: str) -> bool:
        return str(subject) in await self.members()

    async def add(self, subject: str, *, note: str | None = None) -> bool:
        """Add ``subject``; returns ``False`` when it was already a member."""

        subject = str(subject)

        def mutate(data: Any) -> tuple[list[str] | None, bool]:
            members = members_from_data(data)
            if subject in members:
                return None, False
            return [*members, subject], True

        added = await update_document(
            self._store,
            self._key,
            members_codec,
            mutate,
            note or f"Promo member add {subject}",
            max_attempts=self._max_attempts,
        )
        if added:
            logger.info("promo member added subject=%s", subject)
        return added

    async def remove(self, subject: str) -> list[str]:
        subject = str(subject)

        def mutate(data: Any) -> tuple[list[str], list[str]]:
            members = members_from_data(data)
            if subject not in members:
                raise MemberNotFound(subject)
            remaining = [member for member in members if member != subject]
            return remaining, remaining

        remaining = await update_document(
            self._store,
            self._key,
            members_codec,
            mutate,
            f"Promo member remove {subject}",
            max_attempts=self._max_attempts,
        )
        logger.info("promo member removed subject=%s", subject)
        return remaining


__all__ = ["MEMBERS_KEY", "PromoMembership"]
