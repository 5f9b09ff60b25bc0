import asyncio
import time

import pytest

from broker.models import TokenRecord, UserProfile
from broker.store import BrokerStore
from broker.token_cache import REFRESH_MARGIN_SECONDS, TokenCache
from broker.upstream import microsoft_provider
from tests.oauth_helpers import make_token_result

PROVIDER = microsoft_provider("ms-client", "ms-secret")


class FakeRefresher:
    def __init__(self, *, error: Exception | None = None, delay: float = 0.0) -> None:
        self.calls: list[dict] = []
        self.error = error
        self.delay = delay

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return make_token_result("refreshed", refresh_token=None, expires_in=3600)


def _record(expires_in: float, *, refresh_token: str | None = "refresh-1") -> TokenRecord:
    now = time.time()
    return TokenRecord(
        access_token="original",
        refresh_token=refresh_token,
        expires_at=now + expires_in,
        issued_at=now - 60,
        scope="User.Read",
        profile=UserProfile(id="ms-1", login="ada@example.com"),
    )


def _cache(refresher: FakeRefresher) -> tuple[TokenCache, BrokerStore]:
    store = BrokerStore()
    return TokenCache(store, PROVIDER, refresh_token_fn=refresher), store


@pytest.mark.asyncio
async def test_missing_record_returns_none() -> None:
    refresher = FakeRefresher()
    cache, _ = _cache(refresher)

    assert await cache.get_fresh("octocat") is None
    assert refresher.calls == []


@pytest.mark.asyncio
async def test_fresh_record_is_not_refreshed() -> None:
    refresher = FakeRefresher()
    cache, _ = _cache(refresher)
    await cache.put("octocat", _record(3600))

    record = await cache.get_fresh("octocat")

    assert record.access_token == "original"
    assert refresher.calls == []


@pytest.mark.asyncio
async def test_expiring_record_is_refreshed_once() -> None:
    refresher = FakeRefresher()
    cache, store = _cache(refresher)
    stale = _record(REFRESH_MARGIN_SECONDS - 10)
    await cache.put("octocat", stale)

    record = await cache.get_fresh("octocat")

    assert len(refresher.calls) == 1
    assert refresher.calls[0]["refresh_token"] == "refresh-1"
    assert refresher.calls[0]["provider"] is PROVIDER
    assert record.access_token == "refreshed"
    assert record.expires_at > stale.expires_at
    # Providers may omit a new refresh token; the old one carries over.
    assert record.refresh_token == "refresh-1"
    assert record.profile.login == "ada@example.com"
    persisted = await store.get_token_record("microsoft", "octocat")
    assert persisted.access_token == "refreshed"


@pytest.mark.asyncio
async def test_expiring_record_without_refresh_token_is_returned() -> None:
    refresher = FakeRefresher()
    cache, _ = _cache(refresher)
    await cache.put("octocat", _record(30, refresh_token=None))

    record = await cache.get_fresh("octocat")

    assert record.access_token == "original"
    assert refresher.calls == []


@pytest.mark.asyncio
async def test_failed_refresh_returns_stale_record() -> None:
    refresher = FakeRefresher(error=RuntimeError("invalid_grant"))
    cache, store = _cache(refresher)
    await cache.put("octocat", _record(30))

    record = await cache.get_fresh("octocat")

    assert record.access_token == "original"
    assert len(refresher.calls) == 1
    persisted = await store.get_token_record("microsoft", "octocat")
    assert persisted.access_token == "original"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh() -> None:
    refresher = FakeRefresher(delay=0.05)
    cache, _ = _cache(refresher)
    await cache.put("octocat", _record(30))

    results = await asyncio.gather(*(cache.get_fresh("octocat") for _ in range(5)))

    assert len(refresher.calls) == 1
    assert {record.access_token for record in results} == {"refreshed"}


@pytest.mark.asyncio
async def test_owners_do_not_share_records() -> None:
    refresher = FakeRefresher()
    cache, _ = _cache(refresher)
    await cache.put("octocat", _record(3600))

    assert await cache.get_fresh("hubot") is None
