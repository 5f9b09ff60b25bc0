from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json

from broker.errors import DecodeError


def derive_key(secret: str, purpose: str) -> str:
    """Derive a per-purpose signing key from the broker's cookie secret."""
    return hashlib.sha256(f"mcp-auth-broker:{purpose}:{secret}".encode()).hexdigest()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def sign(data: bytes, key: str) -> bytes:
    return hmac.new(key.encode(), data, hashlib.sha256).digest()


def encode(payload: dict, key: str) -> str:
    data = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return f"{_b64encode(data)}.{_b64encode(sign(data, key))}"


def decode(token: str, key: str) -> dict:
    parts = token.split(".", 1)
    if len(parts) != 2:
        raise DecodeError("Invalid token format.")
    data_b64, sig_b64 = parts
    try:
        data = _b64decode(data_b64)
        actual_sig = _b64decode(sig_b64)
    except (binascii.Error, ValueError) as error:
        raise DecodeError("Invalid token encoding.") from error

    if not hmac.compare_digest(sign(data, key), actual_sig):
        raise DecodeError("Token signature verification failed.")

    try:
        payload = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise DecodeError("Invalid token payload.") from error
    if not isinstance(payload, dict):
        raise DecodeError("Invalid token payload.")
    return payload
