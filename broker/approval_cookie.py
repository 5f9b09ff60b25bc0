from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Mapping

from starlette.responses import Response

from broker import signed_token
from broker.errors import ConfigurationError, DecodeError

LOGGER = logging.getLogger("mcp_auth_broker.oauth")

DEFAULT_COOKIE_NAME = "mcp-approved-client"
DEFAULT_COOKIE_MAX_AGE = 30 * 24 * 60 * 60
MAX_COOKIE_MAX_AGE = 365 * 24 * 60 * 60
KEY_PURPOSE = "approval-cookie"


def approval_digest(client_id: str, redirect_uri: str, scope: str) -> str:
    """Digest of what the user approved, embedded in the cookie."""
    canonical = json.dumps([client_id, redirect_uri, scope], separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def sign_approval(
    client_id: str,
    secret: str,
    approved_digest: str,
    *,
    now: float | None = None,
) -> str:
    issued_at = int(time.time() if now is None else now)
    key = signed_token.derive_key(secret, KEY_PURPOSE)
    return signed_token.encode(
        {"cid": client_id, "dig": approved_digest, "iat": issued_at},
        key,
    )


def verify_approval(
    cookie_value: str | None,
    client_id: str,
    secret: str,
    *,
    max_age: int = DEFAULT_COOKIE_MAX_AGE,
    expected_digest: str | None = None,
    now: float | None = None,
) -> bool:
    if not cookie_value:
        return False

    key = signed_token.derive_key(secret, KEY_PURPOSE)
    try:
        payload = signed_token.decode(cookie_value, key)
    except DecodeError as error:
        LOGGER.debug("Approval cookie rejected for client %s: %s", client_id, error)
        return False

    if payload.get("cid") != client_id:
        LOGGER.debug("Approval cookie was issued to a different client than %s", client_id)
        return False

    issued_at = payload.get("iat")
    if not isinstance(issued_at, int):
        return False
    current = time.time() if now is None else now
    if issued_at + max_age < current:
        LOGGER.debug("Approval cookie for client %s has expired", client_id)
        return False

    if expected_digest is not None and payload.get("dig") != expected_digest:
        LOGGER.debug("Approval cookie for client %s covers a different request", client_id)
        return False
    return True


class ApprovalCookie:
    """Signs and checks the consent cookie that lets a client skip the dialog."""

    def __init__(
        self,
        secret: str,
        *,
        name: str = DEFAULT_COOKIE_NAME,
        domain: str | None = None,
        path: str = "/",
        max_age: int = DEFAULT_COOKIE_MAX_AGE,
        secure: bool = True,
    ) -> None:
        if not secret:
            raise ConfigurationError("An approval cookie secret is required.")
        self._secret = secret
        self.name = name
        self.domain = domain
        self.path = path
        self.max_age = max(1, min(max_age, MAX_COOKIE_MAX_AGE))
        self.secure = secure

    def cookie_name(self, client_id: str) -> str:
        suffix = hashlib.sha256(client_id.encode("utf-8")).hexdigest()[:16]
        return f"{self.name}-{suffix}"

    def sign(self, client_id: str, approved_digest: str, *, now: float | None = None) -> str:
        return sign_approval(client_id, self._secret, approved_digest, now=now)

    def verify(
        self,
        cookies: Mapping[str, str],
        client_id: str,
        *,
        expected_digest: str | None = None,
        now: float | None = None,
    ) -> bool:
        return verify_approval(
            cookies.get(self.cookie_name(client_id)),
            client_id,
            self._secret,
            max_age=self.max_age,
            expected_digest=expected_digest,
            now=now,
        )

    def apply(self, response: Response, client_id: str, approved_digest: str) -> Response:
        response.set_cookie(
            self.cookie_name(client_id),
            self.sign(client_id, approved_digest),
            max_age=self.max_age,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )
        return response
