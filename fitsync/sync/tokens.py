"""OAuth token storage and refresh.

``TokenStore`` persists one ``OAuthTokenSet`` per (user, provider) at
``users/{uid}/tokens/{provider}``.  ``TokenManager`` hands out access tokens
that are valid for at least ``token_refresh_margin_seconds`` and refreshes
them through the provider adapter when they are not.  Concurrent refreshes
for the same (user, provider) share one in-flight task.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Mapping

from fitsync.config import Settings, get_settings
from fitsync.services.store import DocumentStore, StorageError, document_path
from fitsync.sync.base import OAuthTokenSet, Provider, ProviderAdapter, utc_now
from fitsync.sync.errors import ReauthRequired, StorageUnavailable

logger = logging.getLogger("fitsync.sync.tokens")


class TokenStore:
    """Token sets in the document store."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    @staticmethod
    def _path(user_id: str, provider: Provider) -> str:
        return document_path("users", user_id, "tokens", provider.value)

    async def get(self, user_id: str, provider: Provider) -> OAuthTokenSet | None:
        try:
            doc = await self._store.get(self._path(user_id, provider))
        except StorageError as exc:
            raise StorageUnavailable() from exc
        if doc is None:
            return None
        try:
            return OAuthTokenSet.from_document(doc)
        except (KeyError, ValueError) as exc:
            logger.warning(
                "Stored %s token set for user %s is malformed (%s); treating as missing",
                provider.value, user_id, exc,
            )
            return None

    async def put(self, user_id: str, tokens: OAuthTokenSet) -> None:
        try:
            await self._store.set(
                self._path(user_id, tokens.provider), tokens.to_document(), merge=False
            )
        except StorageError as exc:
            raise StorageUnavailable() from exc

    async def clear(self, user_id: str, provider: Provider) -> None:
        try:
            await self._store.delete(self._path(user_id, provider))
        except StorageError as exc:
            raise StorageUnavailable() from exc


class TokenManager:
    """Returns valid access tokens, refreshing them at most once at a time."""

    def __init__(
        self,
        token_store: TokenStore,
        adapters: Mapping[Provider, ProviderAdapter],
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        s = settings or get_settings()
        self._tokens = token_store
        self._adapters = adapters
        self._margin = s.token_refresh_margin_seconds
        self._clock = clock
        self._inflight: dict[tuple[str, Provider], asyncio.Task] = {}

    async def get_valid_access_token(self, user_id: str, provider: Provider) -> str:
        """Return an access token valid for at least the safety margin.

        Raises:
            ReauthRequired:     No token set stored, or the refresh token was
                                rejected (the stored set is cleared).
            ProviderApiError:   Transient refresh failure; tokens are kept.
            StorageUnavailable: Token store failure.
        """
        tokens = await self._load(user_id, provider)
        if not tokens.expires_within(self._margin, self._clock()):
            return tokens.access_token

        key = (user_id, provider)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(user_id, provider))
            self._inflight[key] = task

            def _forget(done: asyncio.Task) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_forget)
        else:
            logger.debug("Joining in-flight %s refresh for user %s", provider.value, user_id)

        # A cancelled caller must not cancel the refresh other callers share
        return await asyncio.shield(task)

    async def invalidate(self, user_id: str, provider: Provider) -> None:
        """Forget the token set after the provider rejected it."""
        logger.warning("Clearing %s tokens for user %s", provider.value, user_id)
        await self._tokens.clear(user_id, provider)

    async def _load(self, user_id: str, provider: Provider) -> OAuthTokenSet:
        tokens = await self._tokens.get(user_id, provider)
        if tokens is None:
            raise ReauthRequired(
                f"No {provider.value} tokens stored. Please connect the provider in your profile."
            )
        return tokens

    async def _refresh(self, user_id: str, provider: Provider) -> str:
        # An earlier refresh may have rotated the tokens since the caller's read
        tokens = await self._load(user_id, provider)
        if not tokens.expires_within(self._margin, self._clock()):
            logger.debug("%s token for user %s already refreshed", provider.value, user_id)
            return tokens.access_token

        adapter = self._adapters[provider]
        logger.info("Refreshing %s access token for user %s", provider.value, user_id)
        try:
            new_tokens = await adapter.refresh_token(tokens.refresh_token)
        except ReauthRequired:
            logger.warning(
                "%s rejected the refresh token for user %s; reconnect required",
                provider.value, user_id,
            )
            await self._tokens.clear(user_id, provider)
            raise

        if not new_tokens.scope:
            new_tokens.scope = list(tokens.scope)
        await self._tokens.put(user_id, new_tokens)
        logger.info(
            "Refreshed %s token for user %s (expires %s)",
            provider.value, user_id, new_tokens.expires_at.isoformat(),
        )
        return new_tokens.access_token
