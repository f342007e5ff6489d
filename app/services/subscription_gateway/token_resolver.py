"""Recovery of the subscriber reference from an opaque subscription token.

The control plane has issued two token layouts over time:

* a signed JWT ``header.payload.signature`` whose payload carries the
  username in ``sub``;
* the legacy ``base64url("<username>,<unix timestamp>") + signature`` form,
  e.g. ``dGdfOTc4ODU1NTE2LDE3NzExNDc3MzE8x7xAzvZbH`` -> ``tg_978855516``.

Both are tried in that order. Nothing here raises: an unreadable token only
means the request is proxied untracked.
"""

import base64
import binascii
import json
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

SUBSCRIBER_REF_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,32}$")
_LEGACY_PAYLOAD_PATTERN = re.compile(rb"^([A-Za-z0-9_]{3,32}),(\d+)")

LEGACY_PREFIX_LENGTH = 100


def _lenient_b64decode(segment: str) -> bytes:
    normalized = segment.strip().replace("-", "+").replace("_", "/").rstrip("=")
    remainder = len(normalized) % 4
    if remainder == 1:
        normalized = normalized[:-1]
    elif remainder:
        normalized += "=" * (4 - remainder)
    try:
        return base64.b64decode(normalized)
    except (binascii.Error, ValueError):
        return b""


def is_subscriber_ref(value: object) -> bool:
    return isinstance(value, str) and bool(SUBSCRIBER_REF_PATTERN.match(value))


def _from_signed_token(token: str) -> Optional[str]:
    parts = token.split(".")
    if len(parts) != 3:
        return None

    payload_raw = _lenient_b64decode(parts[1])
    if not payload_raw:
        return None

    try:
        payload = json.loads(payload_raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None

    if not isinstance(payload, dict):
        return None

    subject = payload.get("sub")
    return subject if is_subscriber_ref(subject) else None


def _from_legacy_token(token: str) -> Optional[str]:
    decoded = _lenient_b64decode(token[:LEGACY_PREFIX_LENGTH])
    match = _LEGACY_PAYLOAD_PATTERN.match(decoded)
    if not match:
        return None
    return match.group(1).decode("ascii")


def resolve_subscriber_ref(token: Optional[str]) -> Optional[str]:
    if not token or not isinstance(token, str):
        return None

    try:
        return _from_signed_token(token) or _from_legacy_token(token)
    except Exception as error:
        logger.debug("Не удалось разобрать токен подписки %s...: %s", token[:10], error)
        return None
