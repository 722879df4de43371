"""Strict (de)serialisation of the documents kept in the versioned store.

The balance and membership files are loaded directly by browser pages, so they
are stored as a JavaScript assignment (``window.USER_BALANCES = {...}``). Only
the JSON part is ever parsed; nothing is evaluated.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from ledger.errors import LedgerFormatError
from ledger.models import Account, AccountMap

BALANCES_PREFIX = "window.USER_BALANCES ="
MEMBERS_PREFIX = "window.PROMO_MEMBERS ="

BALANCE_FIELD = "ngn"


class DocumentCodec:
    """Turns a store document into JSON data and back."""

    def __init__(self, prefix: str | None = None) -> None:
        self.prefix = prefix

    def decode(self, raw: Optional[str]) -> Any:
        if raw is None:
            return None
        text = raw.strip()
        if self.prefix:
            if text.startswith(self.prefix):
                text = text[len(self.prefix):]
            text = text.strip().rstrip(";").strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise LedgerFormatError(f"document is not valid JSON: {exc.msg}") from exc

    def encode(self, data: Any) -> str:
        body = json.dumps(data, indent=2, ensure_ascii=False)
        if self.prefix:
            return f"{self.prefix} {body}"
        return body


def _parse_balance(subject: str, value: Any) -> int:
    if isinstance(value, bool):
        raise LedgerFormatError(f"balance of {subject} is not a number")
    if isinstance(value, float):
        if not value.is_integer():
            raise LedgerFormatError(f"balance of {subject} is fractional: {value}")
        value = int(value)
    if not isinstance(value, int):
        raise LedgerFormatError(f"balance of {subject} is not a number")
    if value < 0:
        raise LedgerFormatError(f"balance of {subject} is negative: {value}")
    return value


def accounts_from_data(data: Any) -> AccountMap:
    if data is None:
        return AccountMap()
    if not isinstance(data, dict):
        raise LedgerFormatError("balance document must be an object")

    accounts: dict[str, Account] = {}
    for subject, entry in data.items():
        if not isinstance(entry, dict):
            raise LedgerFormatError(f"entry for {subject} must be an object")
        extra = {key: value for key, value in entry.items() if key != BALANCE_FIELD}
        balance = _parse_balance(subject, entry.get(BALANCE_FIELD, 0))
        accounts[str(subject)] = Account(subject=str(subject), balance_minor=balance, extra=extra)
    return AccountMap(accounts)


def accounts_to_data(accounts: AccountMap) -> dict[str, dict[str, Any]]:
    data: dict[str, dict[str, Any]] = {}
    for account in accounts:
        entry = dict(account.extra)
        entry[BALANCE_FIELD] = account.balance_minor
        data[account.subject] = entry
    return data


def members_from_data(data: Any) -> list[str]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise LedgerFormatError("membership document must be a list")
    members: list[str] = []
    for item in data:
        if isinstance(item, bool) or not isinstance(item, (str, int)):
            raise LedgerFormatError(f"invalid member id: {item!r}")
        members.append(str(item))
    return members


balances_codec = DocumentCodec(BALANCES_PREFIX)
members_codec = DocumentCodec(MEMBERS_PREFIX)
json_codec = DocumentCodec()


__all__ = [
    "DocumentCodec",
    "accounts_from_data",
    "accounts_to_data",
    "balances_codec",
    "json_codec",
    "members_codec",
    "members_from_data",
]
