from __future__ import annotations

import base64
import logging
from pathlib import Path

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from key_value.aio.adapters.pydantic import PydanticAdapter
from key_value.aio.protocols import AsyncKeyValue
from key_value.aio.stores.memory import MemoryStore

from broker.errors import ConfigurationError
from broker.models import PendingOAuthState, SessionGrant, TokenRecord

LOGGER = logging.getLogger("mcp_auth_broker.tokens")

PENDING_STATE_COLLECTION = "approval-state"
TOKEN_RECORD_COLLECTION = "token-record"
SESSION_GRANT_COLLECTION = "session-grant"
PENDING_STATE_TTL_SECONDS = 10 * 60
TOKEN_RECORD_TTL_SECONDS = 90 * 24 * 60 * 60
STORAGE_KEY_SALT = b"mcp-auth-broker-storage-encryption-key"


def derive_storage_key(secret: str) -> bytes:
    """Fernet key for the on-disk store, derived from the broker secret."""
    derived = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=STORAGE_KEY_SALT,
        info=b"token-store",
    ).derive(secret.encode("utf-8"))
    return base64.urlsafe_b64encode(derived)


def build_key_value(path: str | Path | None = None, *, secret: str | None = None) -> AsyncKeyValue:
    if not path:
        return MemoryStore()
    if not secret:
        raise ConfigurationError("The on-disk token store needs an encryption secret.")
    from key_value.aio.stores.disk import DiskStore
    from key_value.aio.wrappers.encryption import FernetEncryptionWrapper

    return FernetEncryptionWrapper(
        key_value=DiskStore(directory=Path(path)),
        fernet=Fernet(key=derive_storage_key(secret)),
    )


def token_record_key(provider: str, owner_identity: str) -> str:
    return f"{provider}:{owner_identity}"


class BrokerStore:
    """Durable keyed state: pending link nonces and per-owner token records.

    Every write carries an explicit TTL so abandoned flows and stale links
    disappear on their own.
    """

    def __init__(self, key_value: AsyncKeyValue | None = None, *, backend: str = "memory") -> None:
        self._key_value = key_value or MemoryStore()
        self.backend = backend
        self._pending = PydanticAdapter[PendingOAuthState](
            key_value=self._key_value,
            pydantic_model=PendingOAuthState,
            default_collection=PENDING_STATE_COLLECTION,
        )
        self._tokens = PydanticAdapter[TokenRecord](
            key_value=self._key_value,
            pydantic_model=TokenRecord,
            default_collection=TOKEN_RECORD_COLLECTION,
        )
        self._grants = PydanticAdapter[SessionGrant](
            key_value=self._key_value,
            pydantic_model=SessionGrant,
            default_collection=SESSION_GRANT_COLLECTION,
        )

    @classmethod
    def open(cls, path: str | Path | None = None, *, secret: str | None = None) -> "BrokerStore":
        """In-memory store, or an encrypted disk store when ``path`` is set."""
        backend = "encrypted-disk" if path else "memory"
        return cls(build_key_value(path, secret=secret), backend=backend)

    async def put_pending_state(
        self,
        nonce: str,
        pending: PendingOAuthState,
        *,
        ttl: int = PENDING_STATE_TTL_SECONDS,
    ) -> None:
        await self._pending.put(key=nonce, value=pending, ttl=ttl)

    async def peek_pending_state(self, nonce: str) -> PendingOAuthState | None:
        return await self._pending.get(key=nonce)

    async def take_pending_state(self, nonce: str) -> PendingOAuthState | None:
        # Best-effort single use: two concurrent readers may both see the entry.
        pending = await self._pending.get(key=nonce)
        if pending is not None:
            await self._pending.delete(key=nonce)
        return pending

    async def get_token_record(self, provider: str, owner_identity: str) -> TokenRecord | None:
        return await self._tokens.get(key=token_record_key(provider, owner_identity))

    async def put_token_record(
        self,
        provider: str,
        owner_identity: str,
        record: TokenRecord,
        *,
        ttl: int = TOKEN_RECORD_TTL_SECONDS,
    ) -> None:
        await self._tokens.put(key=token_record_key(provider, owner_identity), value=record, ttl=ttl)
        LOGGER.info("Stored %s token record for owner %s", provider, owner_identity)

    async def delete_token_record(self, provider: str, owner_identity: str) -> None:
        await self._tokens.delete(key=token_record_key(provider, owner_identity))

    async def put_session_grant(self, code: str, grant: SessionGrant, *, ttl: int) -> None:
        await self._grants.put(key=code, value=grant, ttl=ttl)

    async def take_session_grant(self, code: str) -> SessionGrant | None:
        grant = await self._grants.get(key=code)
        if grant is not None:
            await self._grants.delete(key=code)
        return grant
