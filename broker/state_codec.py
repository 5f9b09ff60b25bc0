"""Opaque state carried through the upstream provider's redirect.

The state is the URL-safe base64 of the canonical JSON of an
``AuthorizationRequest``. It may come back with one extra layer of
percent-encoding applied by intermediate redirects, so ``decode`` tries the
value as received first and then once more after unquoting it.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import urllib.parse

from broker.errors import DecodeError
from broker.models import AuthorizationRequest

LOGGER = logging.getLogger("mcp_auth_broker.oauth")


def encode(request: AuthorizationRequest) -> str:
    data = json.dumps(request.to_dict(), separators=(",", ":"), sort_keys=True)
    return base64.urlsafe_b64encode(data.encode("utf-8")).decode("ascii")


def _decode_layer(raw: str) -> AuthorizationRequest:
    try:
        data = base64.b64decode(raw.encode("ascii"), altchars=b"-_", validate=True)
        payload = json.loads(data.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError, RecursionError) as error:
        raise DecodeError(f"State is not valid encoded JSON: {error}") from error

    if not isinstance(payload, dict):
        raise DecodeError("State must decode to a JSON object.")
    try:
        return AuthorizationRequest.from_dict(payload)
    except ValueError as error:
        raise DecodeError(f"State has an invalid structure: {error}") from error


def decode(raw: str | None) -> AuthorizationRequest:
    if not raw:
        raise DecodeError("Missing state parameter.")

    try:
        request = _decode_layer(raw)
    except DecodeError as direct_error:
        unquoted = urllib.parse.unquote(raw)
        if unquoted == raw:
            raise
        LOGGER.info("Direct state decode failed; retrying after percent-decoding")
        try:
            request = _decode_layer(unquoted)
        except DecodeError as error:
            raise DecodeError(f"State decoding failed: {error}") from direct_error

    if not request.client_id:
        raise DecodeError("Invalid state - missing client_id.")
    return request
