import base64
import json

import pytest

from app.services.subscription_gateway.token_resolver import is_subscriber_ref, resolve_subscriber_ref


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _signed_token(payload: dict) -> str:
    header = _b64url(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
    body = _b64url(json.dumps(payload).encode())
    return f"{header}.{body}.c2lnbmF0dXJl"


def test_legacy_marzban_token_resolves_username():
    assert resolve_subscriber_ref("dGdfOTc4ODU1NTE2LDE3NzExNDc3MzE8x7xAzvZbH") == "tg_978855516"


def test_legacy_token_built_from_username_and_timestamp():
    token = _b64url(b"alice_01,1771147731") + "Xy9kQ2pLm"
    assert resolve_subscriber_ref(token) == "alice_01"


def test_signed_token_uses_sub_claim():
    token = _signed_token({"sub": "tg_123456789", "access": "subscription"})
    assert resolve_subscriber_ref(token) == "tg_123456789"


def test_signed_token_with_invalid_sub_is_unresolved():
    token = _signed_token({"sub": "bad ref with spaces"})
    assert resolve_subscriber_ref(token) is None


@pytest.mark.parametrize(
    "token",
    [
        "",
        None,
        "not-a-token",
        "a.b.c",
        "%%%%%%%%%%%%",
        "x" * 500,
        _b64url(b"no comma here at all"),
        _b64url(b"ab,1771147731"),
        _b64url(b"\xff\xfe\xfd binary"),
    ],
)
def test_malformed_tokens_are_unresolved(token):
    assert resolve_subscriber_ref(token) is None


@pytest.mark.parametrize(
    "value, expected",
    [
        ("tg_978855516", True),
        ("abc", True),
        ("ab", False),
        ("a" * 33, False),
        ("user-name", False),
        (12345, False),
    ],
)
def test_subscriber_ref_format(value, expected):
    assert is_subscriber_ref(value) is expected
