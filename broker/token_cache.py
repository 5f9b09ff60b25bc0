from __future__ import annotations

import asyncio
import logging
import weakref

import httpx

from broker import upstream
from broker.errors import RefreshError
from broker.models import TokenRecord
from broker.store import TOKEN_RECORD_TTL_SECONDS, BrokerStore
from broker.upstream import ProviderConfig

LOGGER = logging.getLogger("mcp_auth_broker.tokens")

REFRESH_MARGIN_SECONDS = 5 * 60


class TokenCache:
    """Per-owner token records for one provider, renewed before they expire.

    ``get_fresh`` returns a record whose access token stays valid for at least
    ``margin_seconds`` when a refresh is possible. Refreshes for the same
    owner are coalesced inside this process; a failed refresh leaves the
    stale record in place and hands it back, so callers must still expect
    the provider to reject it.
    """

    def __init__(
        self,
        store: BrokerStore,
        provider: ProviderConfig,
        *,
        refresh_token_fn=upstream.refresh_token,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = upstream.DEFAULT_TIMEOUT_SECONDS,
        ttl_seconds: int = TOKEN_RECORD_TTL_SECONDS,
        margin_seconds: int = REFRESH_MARGIN_SECONDS,
    ) -> None:
        self.store = store
        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self.margin_seconds = margin_seconds
        self._refresh_token_fn = refresh_token_fn
        self._http_client = http_client
        self._timeout = timeout
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def get(self, owner_identity: str) -> TokenRecord | None:
        return await self.store.get_token_record(self.provider.name, owner_identity)

    async def put(
        self,
        owner_identity: str,
        record: TokenRecord,
        ttl: int | None = None,
    ) -> None:
        await self.store.put_token_record(
            self.provider.name,
            owner_identity,
            record,
            ttl=self.ttl_seconds if ttl is None else ttl,
        )

    async def get_fresh(self, owner_identity: str) -> TokenRecord | None:
        record = await self.get(owner_identity)
        if record is None or not record.expires_within(self.margin_seconds):
            return record
        if not record.refresh_token:
            LOGGER.info(
                "%s token for owner %s is expiring and has no refresh token",
                self.provider.name,
                owner_identity,
            )
            return record

        async with self._lock_for(owner_identity):
            # Another caller may have refreshed while we waited for the lock.
            current = await self.get(owner_identity) or record
            if not current.expires_within(self.margin_seconds) or not current.refresh_token:
                return current
            try:
                return await self._refresh(owner_identity, current)
            except RefreshError as error:
                LOGGER.warning(
                    "Returning stale %s token for owner %s: %s",
                    self.provider.name,
                    owner_identity,
                    error,
                )
                return current

    def _lock_for(self, owner_identity: str) -> asyncio.Lock:
        lock = self._locks.get(owner_identity)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[owner_identity] = lock
        return lock

    async def _refresh(self, owner_identity: str, record: TokenRecord) -> TokenRecord:
        try:
            result = await self._refresh_token_fn(
                provider=self.provider,
                refresh_token=record.refresh_token,
                client=self._http_client,
                timeout=self._timeout,
            )
        except Exception as error:
            raise RefreshError(f"{self.provider.name} refresh failed: {error}") from error

        refreshed = TokenRecord(
            access_token=result.access_token,
            refresh_token=result.refresh_token or record.refresh_token,
            expires_at=result.expires_at,
            issued_at=result.issued_at,
            scope=result.scope or record.scope,
            profile=record.profile,
        )
        await self.put(owner_identity, refreshed)
        LOGGER.info("Refreshed %s token for owner %s", self.provider.name, owner_identity)
        return refreshed
