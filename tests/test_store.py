import json
import time

import pytest
from key_value.aio.stores.disk import DiskStore

from broker.errors import ConfigurationError
from broker.models import PendingOAuthState, TokenRecord
from broker.store import (
    TOKEN_RECORD_COLLECTION,
    BrokerStore,
    build_key_value,
    derive_storage_key,
    token_record_key,
)


def _record(access_token: str = "tok1") -> TokenRecord:
    now = time.time()
    return TokenRecord(access_token=access_token, expires_at=now + 3600, issued_at=now)


def test_token_record_key_scopes_by_provider() -> None:
    assert token_record_key("github", "octocat") == "github:octocat"
    assert token_record_key("microsoft", "octocat") != token_record_key("github", "octocat")


def test_token_record_requires_future_expiry() -> None:
    with pytest.raises(ValueError):
        TokenRecord(access_token="a", expires_at=10.0, issued_at=10.0)


@pytest.mark.asyncio
async def test_token_record_round_trip() -> None:
    store = BrokerStore()

    await store.put_token_record("github", "octocat", _record())

    loaded = await store.get_token_record("github", "octocat")
    assert loaded is not None
    assert loaded.access_token == "tok1"
    assert await store.get_token_record("microsoft", "octocat") is None


@pytest.mark.asyncio
async def test_token_record_delete() -> None:
    store = BrokerStore()
    await store.put_token_record("github", "octocat", _record())

    await store.delete_token_record("github", "octocat")

    assert await store.get_token_record("github", "octocat") is None


@pytest.mark.asyncio
async def test_pending_state_is_single_use() -> None:
    store = BrokerStore()
    pending = PendingOAuthState(owner_identity="octocat", created_at=time.time())
    await store.put_pending_state("nonce-1", pending)

    assert await store.peek_pending_state("nonce-1") == pending
    assert await store.take_pending_state("nonce-1") == pending
    assert await store.take_pending_state("nonce-1") is None


@pytest.mark.asyncio
async def test_disk_store_persists_across_instances(tmp_path) -> None:
    first = BrokerStore.open(tmp_path / "tokens", secret="cookie-secret")
    await first.put_token_record("github", "octocat", _record("persisted"))

    second = BrokerStore.open(tmp_path / "tokens", secret="cookie-secret")
    loaded = await second.get_token_record("github", "octocat")

    assert second.backend == "encrypted-disk"
    assert loaded is not None
    assert loaded.access_token == "persisted"

    raw = await DiskStore(directory=tmp_path / "tokens").get(
        key=token_record_key("github", "octocat"), collection=TOKEN_RECORD_COLLECTION
    )
    assert raw is not None
    assert "persisted" not in json.dumps(raw)


def test_disk_store_requires_secret(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        build_key_value(tmp_path / "tokens")


def test_memory_store_backend_label() -> None:
    assert BrokerStore.open().backend == "memory"
    assert derive_storage_key("a") != derive_storage_key("b")
