from __future__ import annotations

import logging
import secrets
import time
from typing import Protocol

from broker.errors import DecodeError
from broker.models import (
    AuthorizationRequest,
    HandoffPayload,
    SessionGrant,
    TokenBundle,
)
from broker.policy import AccessPolicy
from broker.store import BrokerStore
from broker.urls import append_query_params

LOGGER = logging.getLogger("mcp_auth_broker.oauth")

DEFAULT_GRANT_TTL_SECONDS = 60


class SessionIssuer(Protocol):
    async def issue(self, payload: HandoffPayload) -> str:
        """Mint the client's credential and return where to send the browser."""
        ...


class StoredGrantIssuer:
    """Hands the completed authorization to the client as a one-time code.

    The handoff is kept server-side under a random code for a short TTL; the
    client's redirect URI only ever sees the code and its original state.

    The broker mounts no token endpoint. The embedding application owns the
    exchange and calls ``redeem`` from its own token route.
    """

    def __init__(
        self,
        store: BrokerStore,
        *,
        grant_ttl_seconds: int = DEFAULT_GRANT_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.grant_ttl_seconds = grant_ttl_seconds

    async def issue(self, payload: HandoffPayload) -> str:
        code = secrets.token_urlsafe(32)
        await self.store.put_session_grant(
            code,
            SessionGrant(
                user_id=payload.user_id,
                client_id=payload.request.client_id,
                redirect_uri=payload.request.redirect_uri,
                scope=payload.scope,
                metadata=payload.metadata,
                props=payload.props,
                created_at=time.time(),
            ),
            ttl=self.grant_ttl_seconds,
        )
        return append_query_params(
            payload.request.redirect_uri,
            {"code": code, "state": payload.request.state or None},
        )

    async def redeem(self, code: str, *, client_id: str) -> SessionGrant:
        """Consume a one-time code for ``client_id``. Called by the embedding application."""
        grant = await self.store.take_session_grant(code)
        if grant is None:
            raise DecodeError("Invalid or expired authorization code.")
        if time.time() - grant.created_at > self.grant_ttl_seconds:
            raise DecodeError("Authorization code expired.")
        if grant.client_id != client_id:
            raise DecodeError("Authorization code does not match client.")
        return grant


class CompletionBridge:
    def __init__(
        self,
        issuer: SessionIssuer,
        *,
        policy: AccessPolicy | None = None,
    ) -> None:
        self.issuer = issuer
        self.policy = policy or AccessPolicy()

    def build_payload(
        self,
        owner_identity: str,
        request: AuthorizationRequest,
        metadata: dict,
        tokens: TokenBundle,
    ) -> HandoffPayload:
        profile = tokens.profile
        props = {
            "login": profile.login,
            "name": profile.name,
            "email": profile.email,
            "access_token": tokens.access_token,
            "privileged": self.policy.is_privileged(profile.login),
        }
        if tokens.secondary is not None:
            props["secondary_access_token"] = tokens.secondary.access_token
            props["secondary_refresh_token"] = tokens.secondary.refresh_token
            props["secondary_expires_at"] = tokens.secondary.expires_at

        return HandoffPayload(
            user_id=owner_identity,
            scope=request.scope,
            metadata=dict(metadata),
            props=props,
            request=request,
        )

    async def complete_authorization(
        self,
        owner_identity: str,
        request: AuthorizationRequest,
        metadata: dict,
        tokens: TokenBundle,
    ) -> HandoffPayload:
        payload = self.build_payload(owner_identity, request, metadata, tokens)
        payload.redirect_to = await self.issuer.issue(payload)
        LOGGER.info(
            "Completed authorization for owner %s (client %s, linked=%s)",
            owner_identity,
            request.client_id,
            tokens.secondary is not None,
        )
        return payload
