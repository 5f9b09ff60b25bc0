import pytest

from broker import signed_token
from broker.errors import DecodeError


def test_round_trip_preserves_payload() -> None:
    key = signed_token.derive_key("secret", "unit")
    token = signed_token.encode({"cid": "abc123", "iat": 1}, key)

    assert signed_token.decode(token, key) == {"cid": "abc123", "iat": 1}


def test_derive_key_separates_purposes() -> None:
    assert signed_token.derive_key("secret", "a") != signed_token.derive_key("secret", "b")


def test_decode_rejects_wrong_key() -> None:
    token = signed_token.encode({"cid": "abc123"}, signed_token.derive_key("one", "unit"))

    with pytest.raises(DecodeError, match="signature"):
        signed_token.decode(token, signed_token.derive_key("two", "unit"))


def test_decode_rejects_tampered_payload() -> None:
    key = signed_token.derive_key("secret", "unit")
    token = signed_token.encode({"cid": "abc123"}, key)
    forged = signed_token.encode({"cid": "evil"}, key).split(".")[0]

    with pytest.raises(DecodeError):
        signed_token.decode(f"{forged}.{token.split('.')[1]}", key)


@pytest.mark.parametrize("token", ["", "no-dot", "!!!.???"])
def test_decode_rejects_malformed_tokens(token: str) -> None:
    with pytest.raises(DecodeError):
        signed_token.decode(token, signed_token.derive_key("secret", "unit"))
