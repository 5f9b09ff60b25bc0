from __future__ import annotations

from typing import TYPE_CHECKING

from .constants import APP_VERSION, AUTH_MODE

if TYPE_CHECKING:
    from fastmcp import FastMCP

    from broker.oauth_server import OAuthServer


def health_payload(oauth_server: "OAuthServer") -> dict:
    secondary = oauth_server.secondary
    return {
        "status": "ok",
        "version": APP_VERSION,
        "auth_mode": AUTH_MODE,
        "providers": {
            "primary": oauth_server.primary.name,
            "secondary": secondary.name if secondary is not None else None,
        },
        "store": oauth_server.store.backend,
    }


def mount_health_route(mcp: "FastMCP", oauth_server: "OAuthServer") -> None:
    """``GET /health``: liveness plus which providers and store backend are wired."""
    from starlette.requests import Request
    from starlette.responses import JSONResponse, Response

    @mcp.custom_route("/health", methods=["GET"])
    async def health_route(request: Request) -> Response:
        del request
        return JSONResponse(health_payload(oauth_server))
