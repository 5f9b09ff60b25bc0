from __future__ import annotations

import logging
import secrets
import time

import httpx
from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse, Response

from broker import pages, state_codec, upstream
from broker.approval_cookie import ApprovalCookie, approval_digest
from broker.client_registry import ClientInfo, ClientRegistry
from broker.completion import CompletionBridge, StoredGrantIssuer
from broker.cors import (
    DEFAULT_CORS_ORIGINS,
    apply_cors_response,
    cors_text_response,
    mount_preflight_route,
)
from broker.errors import (
    ApprovalDenied,
    BrokerError,
    DecodeError,
    UpstreamExchangeError,
    UpstreamProfileError,
)
from broker.models import (
    AuthorizationRequest,
    FlowState,
    PendingOAuthState,
    TokenBundle,
    UserProfile,
)
from broker.policy import AccessPolicy
from broker.store import PENDING_STATE_TTL_SECONDS, TOKEN_RECORD_TTL_SECONDS, BrokerStore
from broker.token_cache import TokenCache
from broker.upstream import ProviderConfig, TokenResult
from broker.urls import public_endpoint

LOGGER = logging.getLogger("mcp_auth_broker.oauth")

DEFAULT_SERVER_NAME = "MCP Auth Broker"


class OAuthServer:
    """Brokers the primary sign-in and the optional secondary account link.

    Primary flow: ``/authorize`` → consent (skipped with a valid approval
    cookie) → provider → ``/callback`` → session issuer → client redirect.
    Secondary flow: ``/{provider}/authorize?userId=`` → consent → provider →
    ``/{provider}/callback``, which stores the linked token record.
    """

    def __init__(
        self,
        *,
        public_url: str,
        primary: ProviderConfig,
        approval_cookie: ApprovalCookie,
        client_registry: ClientRegistry,
        store: BrokerStore,
        secondary: ProviderConfig | None = None,
        policy: AccessPolicy | None = None,
        bridge: CompletionBridge | None = None,
        server_name: str = DEFAULT_SERVER_NAME,
        cors_origins: set[str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = upstream.DEFAULT_TIMEOUT_SECONDS,
        pending_state_ttl_seconds: int = PENDING_STATE_TTL_SECONDS,
        token_ttl_seconds: int = TOKEN_RECORD_TTL_SECONDS,
        exchange_code_fn=upstream.exchange_code,
        refresh_token_fn=upstream.refresh_token,
        fetch_profile_fn=upstream.fetch_profile,
    ) -> None:
        self.public_url = public_url.rstrip("/")
        self.primary = primary
        self.secondary = secondary
        self.approval_cookie = approval_cookie
        self.client_registry = client_registry
        self.store = store
        self.policy = policy or AccessPolicy()
        self.bridge = bridge or CompletionBridge(StoredGrantIssuer(store), policy=self.policy)
        self.server_name = server_name
        self.cors_origins = set(DEFAULT_CORS_ORIGINS)
        if cors_origins:
            self.cors_origins.update(cors_origins)

        self.http_client = http_client
        self.timeout = timeout
        self.pending_state_ttl_seconds = pending_state_ttl_seconds

        self._exchange_code_fn = exchange_code_fn
        self._fetch_profile_fn = fetch_profile_fn

        cache_options = {
            "refresh_token_fn": refresh_token_fn,
            "http_client": http_client,
            "timeout": timeout,
            "ttl_seconds": token_ttl_seconds,
        }
        self.primary_tokens = TokenCache(store, primary, **cache_options)
        self.secondary_tokens = (
            TokenCache(store, secondary, **cache_options) if secondary else None
        )

    # -- endpoints -------------------------------------------------------------

    @property
    def callback_url(self) -> str:
        return public_endpoint(self.public_url, "/callback")

    def link_authorize_path(self) -> str:
        return f"/{self.secondary.name}/authorize"

    def link_callback_url(self) -> str:
        return public_endpoint(self.public_url, f"/{self.secondary.name}/callback")

    def mount_routes(self, mcp) -> None:
        @mcp.custom_route("/authorize", methods=["GET"])
        async def authorize_route(request: Request) -> Response:
            return await self._handle_authorize(request)

        @mcp.custom_route("/authorize", methods=["POST"])
        async def approve_route(request: Request) -> Response:
            return await self._handle_approve(request)

        @mcp.custom_route("/callback", methods=["GET"])
        async def callback_route(request: Request) -> Response:
            return await self._handle_callback(request)

        routes = {"/authorize": ("GET", "POST"), "/callback": ("GET",)}

        if self.secondary is not None:
            name = self.secondary.name

            @mcp.custom_route(f"/{name}/authorize", methods=["GET"])
            async def link_authorize_route(request: Request) -> Response:
                return await self._handle_link_authorize(request)

            @mcp.custom_route(f"/{name}/authorize", methods=["POST"])
            async def link_approve_route(request: Request) -> Response:
                return await self._handle_link_approve(request)

            @mcp.custom_route(f"/{name}/callback", methods=["GET"])
            async def link_callback_route(request: Request) -> Response:
                return await self._handle_link_callback(request)

            routes[f"/{name}/authorize"] = ("GET", "POST")
            routes[f"/{name}/callback"] = ("GET",)

        for path, methods in routes.items():
            mount_preflight_route(mcp, path, self.cors_origins, methods=methods)

    # -- primary flow ----------------------------------------------------------

    async def _handle_authorize(self, request: Request) -> Response:
        auth_request = AuthorizationRequest.from_query(request.query_params)
        self._transition(FlowState.START, auth_request.client_id)
        try:
            client = self._require_client(auth_request)
        except BrokerError as error:
            return self._fail(request, error, auth_request.client_id)

        digest = approval_digest(
            auth_request.client_id, auth_request.redirect_uri, auth_request.scope
        )
        if self.approval_cookie.verify(
            request.cookies, auth_request.client_id, expected_digest=digest
        ):
            return self._redirect_to_primary(request, auth_request)

        self._transition(FlowState.AWAITING_APPROVAL, auth_request.client_id)
        return apply_cors_response(
            request,
            HTMLResponse(
                pages.render_consent_page(
                    action="/authorize",
                    state=state_codec.encode(auth_request),
                    client_name=client.client_name,
                    server_name=self.server_name,
                    server_description=(
                        f"Sign in with {self.primary.display_name} to use this MCP server."
                    ),
                    redirect_uri=auth_request.redirect_uri,
                    scopes=auth_request.scope,
                )
            ),
            self.cors_origins,
        )

    async def _handle_approve(self, request: Request) -> Response:
        form = await request.form()
        try:
            auth_request = state_codec.decode(_form_value(form, "state"))
            self._require_client(auth_request)
            if _form_value(form, "action") != "approve":
                raise ApprovalDenied()
        except BrokerError as error:
            return self._fail(request, error)

        response = self._redirect_to_primary(request, auth_request)
        self.approval_cookie.apply(
            response,
            auth_request.client_id,
            approval_digest(auth_request.client_id, auth_request.redirect_uri, auth_request.scope),
        )
        return response

    def _redirect_to_primary(
        self, request: Request, auth_request: AuthorizationRequest
    ) -> Response:
        location = upstream.build_authorize_url(
            self.primary.authorize_url,
            client_id=self.primary.client_id,
            redirect_uri=self.callback_url,
            scope=self.primary.scope,
            state=state_codec.encode(auth_request),
            extra_params=self.primary.extra_authorize_params,
        )
        self._transition(FlowState.REDIRECTED_TO_PROVIDER, auth_request.client_id)
        return apply_cors_response(
            request,
            RedirectResponse(url=location, status_code=302),
            self.cors_origins,
        )

    async def _handle_callback(self, request: Request) -> Response:
        params = request.query_params
        client_id = None
        try:
            if params.get("error"):
                raise BrokerError(
                    f"{self.primary.display_name} authorization failed: {params.get('error')}"
                )
            auth_request = state_codec.decode(params.get("state"))
            client_id = auth_request.client_id
            self._transition(FlowState.AWAITING_CALLBACK, client_id)
            self._require_client(auth_request)
            code = params.get("code")
            if not code:
                raise BrokerError("Missing code parameter.")

            self._transition(FlowState.EXCHANGING_CODE, client_id)
            tokens = await self._exchange(self.primary, code, self.callback_url)
            profile = await self._fetch_profile(self.primary, tokens.access_token)
            if not self.policy.is_allowed(profile.login):
                raise BrokerError("This account is not allowed to use this server.", status_code=403)

            await self.primary_tokens.put(profile.login, tokens.to_record(profile))
            linked = None
            if self.secondary_tokens is not None:
                linked = await self.secondary_tokens.get_fresh(profile.login)

            handoff = await self.bridge.complete_authorization(
                profile.login,
                auth_request,
                {"label": profile.name or profile.login},
                TokenBundle(access_token=tokens.access_token, profile=profile, secondary=linked),
            )
        except BrokerError as error:
            return self._fail(request, error, client_id)

        self._transition(FlowState.COMPLETED, client_id)
        return apply_cors_response(
            request,
            RedirectResponse(url=handoff.redirect_to, status_code=302),
            self.cors_origins,
        )

    # -- secondary account link ------------------------------------------------

    async def _handle_link_authorize(self, request: Request) -> Response:
        owner_identity = request.query_params.get("userId")
        if not owner_identity:
            return cors_text_response(
                request, self.cors_origins, "Missing userId parameter", 400
            )

        nonce = secrets.token_urlsafe(24)
        await self.store.put_pending_state(
            nonce,
            PendingOAuthState(owner_identity=owner_identity, created_at=time.time()),
            ttl=self.pending_state_ttl_seconds,
        )
        LOGGER.info("Started %s link for owner %s", self.secondary.name, owner_identity)

        if self.approval_cookie.verify(
            request.cookies,
            self.secondary.client_id,
            expected_digest=self._link_digest(),
        ):
            return self._redirect_to_secondary(request, nonce)

        return apply_cors_response(
            request,
            HTMLResponse(
                pages.render_consent_page(
                    action=self.link_authorize_path(),
                    state=nonce,
                    client_name=f"{self.secondary.display_name} integration",
                    server_name=self.server_name,
                    server_description=(
                        f"Link your {self.secondary.display_name} account so MCP tools "
                        "can act on your behalf."
                    ),
                    scopes=self.secondary.scope,
                )
            ),
            self.cors_origins,
        )

    async def _handle_link_approve(self, request: Request) -> Response:
        form = await request.form()
        nonce = _form_value(form, "state")
        pending = await self.store.peek_pending_state(nonce) if nonce else None
        if pending is None:
            return cors_text_response(
                request, self.cors_origins, "Invalid or expired state parameter", 400
            )

        if _form_value(form, "action") != "approve":
            await self.store.take_pending_state(nonce)
            LOGGER.info(
                "Owner %s denied the %s link", pending.owner_identity, self.secondary.name
            )
            denied = ApprovalDenied()
            return cors_text_response(
                request, self.cors_origins, denied.message, denied.status_code
            )

        response = self._redirect_to_secondary(request, nonce)
        self.approval_cookie.apply(response, self.secondary.client_id, self._link_digest())
        return response

    def _redirect_to_secondary(self, request: Request, nonce: str) -> Response:
        location = upstream.build_authorize_url(
            self.secondary.authorize_url,
            client_id=self.secondary.client_id,
            redirect_uri=self.link_callback_url(),
            scope=self.secondary.scope,
            state=nonce,
            extra_params=self.secondary.extra_authorize_params,
        )
        return apply_cors_response(
            request,
            RedirectResponse(url=location, status_code=302),
            self.cors_origins,
        )

    async def _handle_link_callback(self, request: Request) -> Response:
        params = request.query_params
        nonce = params.get("state")
        owner_identity = None
        try:
            pending = await self.store.take_pending_state(nonce) if nonce else None
            if pending is not None:
                owner_identity = pending.owner_identity

            error = params.get("error")
            if error:
                LOGGER.warning(
                    "%s returned an authorization error for owner %s: %s",
                    self.secondary.name,
                    owner_identity,
                    error,
                )
                raise BrokerError(params.get("error_description") or error)

            code = params.get("code")
            if not code or not nonce:
                raise BrokerError("Missing code or state parameter.")
            if pending is None:
                raise DecodeError("Invalid or expired state parameter.")

            tokens = await self._exchange(self.secondary, code, self.link_callback_url())
            profile = await self._fetch_profile(self.secondary, tokens.access_token)
            await self.secondary_tokens.put(owner_identity, tokens.to_record(profile))
        except BrokerError as error:
            return apply_cors_response(
                request,
                HTMLResponse(
                    pages.render_link_error_page(
                        provider_label=self.secondary.display_name,
                        message=error.message,
                        authorize_path=self.link_authorize_path(),
                        owner_identity=owner_identity,
                    ),
                    status_code=error.status_code,
                ),
                self.cors_origins,
            )

        LOGGER.info("Linked %s account for owner %s", self.secondary.name, owner_identity)
        return apply_cors_response(
            request,
            HTMLResponse(
                pages.render_link_success_page(
                    provider_label=self.secondary.display_name,
                    display_name=profile.name or profile.login,
                    email=profile.email,
                )
            ),
            self.cors_origins,
        )

    # -- helpers ---------------------------------------------------------------

    def _require_client(self, auth_request: AuthorizationRequest) -> ClientInfo:
        if not auth_request.client_id:
            raise BrokerError("Invalid request")
        client = self.client_registry.get(auth_request.client_id)
        if client is None:
            raise BrokerError("Unknown client_id.")
        if not self.client_registry.validate_redirect_uri(
            auth_request.client_id, auth_request.redirect_uri
        ):
            raise BrokerError("Invalid redirect_uri.")
        return client

    def _link_digest(self) -> str:
        return approval_digest(
            self.secondary.client_id, self.link_callback_url(), self.secondary.scope
        )

    async def _exchange(
        self, provider: ProviderConfig, code: str, redirect_uri: str
    ) -> TokenResult:
        try:
            return await self._exchange_code_fn(
                provider=provider,
                code=code,
                redirect_uri=redirect_uri,
                client=self.http_client,
                timeout=self.timeout,
            )
        except BrokerError:
            raise
        except Exception as error:
            LOGGER.warning(
                "Code exchange with %s failed: %s", provider.name, type(error).__name__
            )
            raise UpstreamExchangeError(502, f"{upstream.EXCHANGE_FAILED_MESSAGE}.") from error

    async def _fetch_profile(self, provider: ProviderConfig, access_token: str) -> UserProfile:
        try:
            return await self._fetch_profile_fn(
                provider=provider,
                access_token=access_token,
                client=self.http_client,
                timeout=self.timeout,
            )
        except BrokerError:
            raise
        except Exception as error:
            LOGGER.warning(
                "Profile lookup with %s failed: %s", provider.name, type(error).__name__
            )
            raise UpstreamProfileError(
                f"Could not verify the {provider.display_name} identity."
            ) from error

    def _transition(self, state: FlowState, client_id: str | None) -> None:
        LOGGER.info("Authorization %s client=%s", state.value, client_id or "-")

    def _fail(
        self, request: Request, error: BrokerError, client_id: str | None = None
    ) -> Response:
        self._transition(FlowState.FAILED, client_id)
        LOGGER.warning("Authorization failed (%s): %s", error.status_code, error.message)
        return cors_text_response(
            request, self.cors_origins, error.message, error.status_code
        )


def _form_value(form, key: str) -> str | None:
    value = form.get(key)
    return value if isinstance(value, str) else None
