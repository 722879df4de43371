"""Versioned object store backed by files in a GitHub repository.

GitHub's contents API already behaves like compare-and-swap: every file has a
blob ``sha`` and an update must quote the sha it replaces, otherwise the API
answers 409. The sha is used as the version token.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Mapping, Optional

import httpx

from ledger.errors import StoreUnavailable, VersionConflict
from ledger.models import Versioned
from wallet.config import settings
from wallet.http_client import (
    AsyncCircuitBreaker,
    CircuitBreakerOpenError,
    async_http_client,
    breaker_from_settings,
    request_with_retries,
)

logger = logging.getLogger(__name__)

_CONFLICT_STATUSES = {409, 422}
_MALFORMED = (ValueError, UnicodeDecodeError, binascii.Error, KeyError, TypeError, AttributeError)


class GitHubContentsStore:
    def __init__(
        self,
        *,
        repo: str,
        token: str,
        paths: Mapping[str, str],
        branch: str | None = None,
        api_base: str = "https://api.github.com",
        circuit_breaker: AsyncCircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not repo:
            raise ValueError("GitHub repository is not configured")
        self._repo = repo
        self._token = token
        self._paths = dict(paths)
        self._branch = branch
        self._api_base = api_base.rstrip("/")
        self._breaker = circuit_breaker or breaker_from_settings("github")
        self._transport = transport

    def _url(self, key: str) -> str:
        path = self._paths.get(key, key)
        return f"/repos/{self._repo}/contents/{path.lstrip('/')}"

    def _client(self):
        headers = {"Accept": "application/vnd.github+json"}
        if self._token:
            headers["Authorization"] = f"token {self._token}"
        options: dict[str, Any] = {}
        if self._transport is not None:
            options["transport"] = self._transport
        return async_http_client(base_url=self._api_base, headers=headers, additional_options=options)

    async def read(self, key: str) -> Versioned:
        params = {"ref": self._branch} if self._branch else None
        try:
            async with self._client() as client:
                response = await request_with_retries(
                    "GET",
                    self._url(key),
                    client=client,
                    circuit_breaker=self._breaker,
                    params=params,
                )
        except (httpx.HTTPError, CircuitBreakerOpenError) as exc:
            raise StoreUnavailable(f"GitHub read failed for {key}: {exc}") from exc

        if response.status_code == 404:
            return Versioned(value=None, version=None)
        if response.status_code != 200:
            raise StoreUnavailable(f"GitHub read failed for {key}: {response.status_code}")

        try:
            payload = response.json()
            if payload.get("encoding") != "base64":
                raise StoreUnavailable(f"GitHub returned {key} without inline content")
            content = base64.b64decode(payload.get("content") or "").decode("utf-8")
            version = payload.get("sha")
        except _MALFORMED as exc:
            raise StoreUnavailable(f"GitHub returned malformed content for {key}: {exc}") from exc
        return Versioned(value=content, version=version)

    async def write(
        self,
        key: str,
        value: str,
        expected_version: Optional[str],
        note: str,
    ) -> str:
        body: dict[str, Any] = {
            "message": note,
            "content": base64.b64encode(value.encode("utf-8")).decode("ascii"),
        }
        if expected_version is not None:
            body["sha"] = expected_version
        if self._branch:
            body["branch"] = self._branch

        async def _put() -> httpx.Response:
            async with self._client() as client:
                return await client.put(self._url(key), json=body)

        # a PUT is not retried: the first attempt may have landed
        try:
            response = await self._breaker.call(_put)
        except (httpx.HTTPError, CircuitBreakerOpenError) as exc:
            raise StoreUnavailable(f"GitHub write failed for {key}: {exc}") from exc

        if response.status_code in _CONFLICT_STATUSES:
            logger.info("GitHub rejected stale sha for %s: %s", key, response.status_code)
            raise VersionConflict(key, expected_version)
        if response.status_code not in (200, 201):
            raise StoreUnavailable(f"GitHub write failed for {key}: {response.status_code}")
        # the file may have been written; a bad reply is treated like a lost one
        try:
            sha = response.json()["content"]["sha"]
        except _MALFORMED as exc:
            raise StoreUnavailable(f"GitHub write for {key} returned no sha: {exc}") from exc
        if not isinstance(sha, str) or not sha:
            raise StoreUnavailable(f"GitHub write for {key} returned no sha")
        return sha


def github_store_from_settings() -> GitHubContentsStore:
    return GitHubContentsStore(
        repo=settings.GITHUB_REPO,
        token=settings.GITHUB_TOKEN,
        branch=settings.GITHUB_BRANCH,
        api_base=settings.GITHUB_API_BASE,
        paths={
            "balances": settings.BALANCE_FILE,
            "promo_members": settings.PROMO_MEMBERS_FILE,
            "promo_intents": settings.INTENTS_FILE,
        },
    )


__all__ = ["GitHubContentsStore", "github_store_from_settings"]
