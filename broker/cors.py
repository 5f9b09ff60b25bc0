from __future__ import annotations

from collections.abc import Iterable

from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

DEFAULT_CORS_ORIGINS = {
    "https://claude.ai",
    "https://claude.com",
    "https://www.anthropic.com",
    "https://api.anthropic.com",
}
DEFAULT_ALLOWED_METHODS = ("GET", "POST")


def _allow_methods_header(methods: Iterable[str]) -> str:
    ordered = [method.upper() for method in methods if method.upper() != "OPTIONS"]
    return ", ".join([*ordered, "OPTIONS"])


def apply_cors_response(
    request: Request,
    response: Response,
    allowed_origins: set[str],
    *,
    methods: Iterable[str] = DEFAULT_ALLOWED_METHODS,
) -> Response:
    origin = request.headers.get("origin")
    if origin and origin in allowed_origins:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = _allow_methods_header(methods)
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        response.headers["Vary"] = "Origin"
    return response


def mount_preflight_route(
    mcp,
    path: str,
    allowed_origins: set[str],
    *,
    methods: Iterable[str] = DEFAULT_ALLOWED_METHODS,
) -> None:
    methods = tuple(methods)

    @mcp.custom_route(path, methods=["OPTIONS"])
    async def preflight_route(request: Request) -> Response:
        return apply_cors_response(
            request, Response(status_code=204), allowed_origins, methods=methods
        )


def cors_text_response(
    request: Request,
    allowed_origins: set[str],
    message: str,
    status_code: int,
) -> Response:
    return apply_cors_response(
        request,
        PlainTextResponse(message, status_code=status_code),
        allowed_origins,
    )
