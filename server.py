from __future__ import annotations

import os
from typing import TYPE_CHECKING

from gateway.app import mount_health_route
from gateway.constants import LOGGER
from gateway.env import load_env, load_settings, setup_logging, validate_env
from gateway.http import build_http_client

if TYPE_CHECKING:
    from fastmcp import FastMCP

SERVER_NAME = "MCP Auth Broker"


def create_mcp() -> "FastMCP":
    from fastmcp import FastMCP
    from broker.approval_cookie import ApprovalCookie
    from broker.client_registry import ClientRegistry
    from broker.oauth_server import OAuthServer
    from broker.policy import AccessPolicy
    from broker.store import BrokerStore
    from broker.upstream import github_provider, microsoft_provider

    load_env()
    setup_logging()
    validate_env()
    settings = load_settings()

    store = BrokerStore.open(settings.token_store_path or None, secret=settings.cookie_secret)
    if settings.clients_file:
        client_registry = ClientRegistry.from_file(settings.clients_file)
    else:
        client_registry = ClientRegistry()

    secondary = None
    if settings.secondary_enabled:
        secondary = microsoft_provider(
            settings.ms_client_id,
            settings.ms_client_secret,
            tenant=settings.ms_tenant_id,
        )

    oauth_server = OAuthServer(
        public_url=settings.public_url,
        primary=github_provider(settings.github_client_id, settings.github_client_secret),
        secondary=secondary,
        approval_cookie=ApprovalCookie(
            settings.cookie_secret,
            name=settings.cookie_name,
            domain=settings.cookie_domain,
            path=settings.cookie_path,
            max_age=settings.cookie_max_age,
        ),
        client_registry=client_registry,
        store=store,
        policy=AccessPolicy.build(
            privileged_users=settings.privileged_users,
            allowed_users=settings.allowed_users or None,
        ),
        server_name=SERVER_NAME,
        cors_origins=settings.cors_origins,
        http_client=build_http_client(
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
        ),
        timeout=settings.http_timeout,
    )
    LOGGER.info(
        "Broker ready at %s (secondary provider: %s)",
        settings.public_url,
        secondary.name if secondary else "disabled",
    )

    mcp = FastMCP(name=SERVER_NAME)
    oauth_server.mount_routes(mcp)
    setattr(mcp, "_oauth_server", oauth_server)
    mount_health_route(mcp, oauth_server)
    return mcp


def main() -> None:
    host = os.getenv("MCP_HOST", "127.0.0.1")
    port = int(os.getenv("MCP_PORT", "8000"))
    mcp = create_mcp()
    mcp.run(transport="streamable-http", host=host, port=port)


if __name__ == "__main__":
    main()
