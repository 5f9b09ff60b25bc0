import asyncio
import re
import time

from broker.approval_cookie import approval_digest
from broker.errors import UpstreamExchangeError
from broker.models import PendingOAuthState
from tests.oauth_helpers import (
    PUBLIC_URL,
    RecordingUpstream,
    approval_cookie_header,
    build_oauth_server,
    query_of,
)

LINK_CALLBACK = f"{PUBLIC_URL}/microsoft/callback"


def _nonce_from_page(html: str) -> str:
    match = re.search(r'name="state" value="([^"]+)"', html)
    assert match is not None
    return match.group(1)


def _put_pending(store, nonce: str, owner: str = "octocat", **kwargs) -> None:
    asyncio.run(
        store.put_pending_state(
            nonce, PendingOAuthState(owner_identity=owner, created_at=time.time()), **kwargs
        )
    )


def test_link_routes_absent_without_secondary_provider() -> None:
    _, test_client, _, _ = build_oauth_server()

    response = test_client.get("/microsoft/authorize", params={"userId": "octocat"})

    assert response.status_code == 404


def test_link_authorize_requires_user_id() -> None:
    _, test_client, _, _ = build_oauth_server(with_secondary=True)

    response = test_client.get("/microsoft/authorize")

    assert response.status_code == 400
    assert response.text == "Missing userId parameter"


def test_link_authorize_stores_pending_state_and_shows_consent() -> None:
    _, test_client, _, store = build_oauth_server(with_secondary=True)

    response = test_client.get(
        "/microsoft/authorize", params={"userId": "octocat"}, follow_redirects=False
    )

    assert response.status_code == 200
    assert 'action="/microsoft/authorize"' in response.text
    nonce = _nonce_from_page(response.text)
    pending = asyncio.run(store.peek_pending_state(nonce))
    assert pending is not None
    assert pending.owner_identity == "octocat"


def test_link_authorize_with_cookie_redirects_to_microsoft() -> None:
    oauth, test_client, _, _ = build_oauth_server(with_secondary=True)
    secondary = oauth.secondary
    digest = approval_digest(secondary.client_id, LINK_CALLBACK, secondary.scope)

    response = test_client.get(
        "/microsoft/authorize",
        params={"userId": "octocat"},
        headers=approval_cookie_header(oauth, secondary.client_id, digest),
        follow_redirects=False,
    )

    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith(secondary.authorize_url)
    query = query_of(location)
    assert query["client_id"] == "ms-client"
    assert query["redirect_uri"] == LINK_CALLBACK
    assert query["prompt"] == "select_account"
    assert query["state"]


def test_link_approve_redirects_with_cookie() -> None:
    oauth, test_client, _, store = build_oauth_server(with_secondary=True)
    _put_pending(store, "nonce-1")

    response = test_client.post(
        "/microsoft/authorize",
        data={"state": "nonce-1", "action": "approve"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert query_of(response.headers["location"])["state"] == "nonce-1"
    assert response.headers["set-cookie"].startswith(
        f"{oauth.approval_cookie.cookie_name('ms-client')}="
    )


def test_link_approve_unknown_nonce_returns_400() -> None:
    _, test_client, _, _ = build_oauth_server(with_secondary=True)

    response = test_client.post(
        "/microsoft/authorize",
        data={"state": "unknown", "action": "approve"},
        follow_redirects=False,
    )

    assert response.status_code == 400


def test_link_deny_returns_403_and_discards_nonce() -> None:
    _, test_client, _, store = build_oauth_server(with_secondary=True)
    _put_pending(store, "nonce-1")

    response = test_client.post(
        "/microsoft/authorize",
        data={"state": "nonce-1", "action": "deny"},
        follow_redirects=False,
    )

    assert response.status_code == 403
    assert asyncio.run(store.peek_pending_state("nonce-1")) is None


def test_link_callback_persists_record_and_renders_success() -> None:
    _, test_client, upstream, store = build_oauth_server(with_secondary=True)
    page = test_client.get("/microsoft/authorize", params={"userId": "octocat"})
    nonce = _nonce_from_page(page.text)

    response = test_client.get(
        "/microsoft/callback", params={"code": "ms-code", "state": nonce}
    )

    assert response.status_code == 200
    assert "Microsoft authentication successful" in response.text
    assert "The Octocat" in response.text
    assert upstream.exchange_calls[0]["code"] == "ms-code"
    assert upstream.exchange_calls[0]["redirect_uri"] == LINK_CALLBACK
    assert upstream.exchange_calls[0]["provider"].name == "microsoft"

    record = asyncio.run(store.get_token_record("microsoft", "octocat"))
    assert record is not None
    assert record.access_token == "tok1"
    assert asyncio.run(store.peek_pending_state(nonce)) is None


def test_link_callback_unknown_nonce_writes_nothing() -> None:
    _, test_client, upstream, store = build_oauth_server(with_secondary=True)

    response = test_client.get(
        "/microsoft/callback", params={"code": "ms-code", "state": "expired-nonce"}
    )

    assert response.status_code == 400
    assert "Start the connection again" in response.text
    assert upstream.exchange_calls == []
    assert asyncio.run(store.get_token_record("microsoft", "octocat")) is None


def test_link_callback_expired_nonce_writes_nothing() -> None:
    _, test_client, upstream, store = build_oauth_server(with_secondary=True)
    _put_pending(store, "short-lived", ttl=1)
    time.sleep(1.5)

    response = test_client.get(
        "/microsoft/callback", params={"code": "ms-code", "state": "short-lived"}
    )

    assert response.status_code == 400
    assert "Start the connection again" in response.text
    assert upstream.exchange_calls == []
    assert asyncio.run(store.get_token_record("microsoft", "octocat")) is None


def test_link_callback_nonce_is_single_use() -> None:
    _, test_client, upstream, store = build_oauth_server(with_secondary=True)
    _put_pending(store, "nonce-1")

    first = test_client.get("/microsoft/callback", params={"code": "c1", "state": "nonce-1"})
    second = test_client.get("/microsoft/callback", params={"code": "c2", "state": "nonce-1"})

    assert first.status_code == 200
    assert second.status_code == 400
    assert len(upstream.exchange_calls) == 1


def test_link_callback_provider_error_offers_retry() -> None:
    _, test_client, upstream, store = build_oauth_server(with_secondary=True)
    _put_pending(store, "nonce-1")

    response = test_client.get(
        "/microsoft/callback",
        params={
            "error": "access_denied",
            "error_description": "The user declined <consent>",
            "state": "nonce-1",
        },
    )

    assert response.status_code == 400
    assert "The user declined &lt;consent&gt;" in response.text
    assert "/microsoft/authorize?userId=octocat" in response.text
    assert upstream.exchange_calls == []


def test_link_callback_exchange_failure_offers_retry() -> None:
    upstream = RecordingUpstream(
        exchange_error=UpstreamExchangeError(400, "Failed to fetch access token (invalid_grant).")
    )
    _, test_client, _, store = build_oauth_server(upstream=upstream, with_secondary=True)
    _put_pending(store, "nonce-1")

    response = test_client.get(
        "/microsoft/callback", params={"code": "ms-code", "state": "nonce-1"}
    )

    assert response.status_code == 400
    assert "invalid_grant" in response.text
    assert "/microsoft/authorize?userId=octocat" in response.text
    assert asyncio.run(store.get_token_record("microsoft", "octocat")) is None
