"""Косметическая переработка подписки: человекочитаемые названия локаций с флагами.

``vless://...#nl-ams-1%20(VLESS)`` -> ``vless://...#🇳🇱 Нидерланды`` (remark
percent-encoded again). Works on plain text and on base64 bodies. Any
failure returns the body untouched.
"""

import base64
import binascii
import logging
import re
from typing import Dict, Optional, Tuple
from urllib.parse import quote, unquote

from app.services.subscription_gateway.errors import RewriteFailure
from app.utils.outcome import Outcome

logger = logging.getLogger(__name__)

DEFAULT_FLAG = "🌐"

_BASE64_BODY = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")
_LINK_WITH_REMARK = re.compile(r"^(?P<link>[A-Za-z][A-Za-z0-9+.\-]*://[^#\s]*)#(?P<remark>.*)$")
_ANNOTATIONS = re.compile(r"\([^)]*\)|\[[^\]]*\]")
_LEADING_GLYPHS = re.compile(
    "^(?:["
    "\U0001F1E6-\U0001F1FF"  # regional indicators (flags)
    "\U0001F300-\U0001FAFF"  # pictographs
    "\u2600-\u27BF"  # misc symbols, dingbats
    "\u2B00-\u2BFF"
    "\uFE0F\u200D\u20E3"  # variation selector, ZWJ, keycap
    "\U000E0020-\U000E007F"  # tag sequences (subdivision flags)
    r"]|\s)+"
)
_TOKEN_SPLIT = re.compile(r"[\s_\-|,.:/]+")

# technical location token -> display name
LOCATION_NAMES: Dict[str, str] = {
    "nl": "Нидерланды", "netherlands": "Нидерланды", "ams": "Нидерланды", "amsterdam": "Нидерланды",
    "de": "Германия", "germany": "Германия", "fra": "Германия", "frankfurt": "Германия",
    "fi": "Финляндия", "finland": "Финляндия", "hel": "Финляндия", "helsinki": "Финляндия",
    "se": "Швеция", "sweden": "Швеция", "sto": "Швеция", "stockholm": "Швеция",
    "pl": "Польша", "poland": "Польша", "waw": "Польша", "warsaw": "Польша",
    "lv": "Латвия", "latvia": "Латвия", "rix": "Латвия", "riga": "Латвия",
    "ee": "Эстония", "estonia": "Эстония", "tll": "Эстония", "tallinn": "Эстония",
    "fr": "Франция", "france": "Франция", "par": "Франция", "paris": "Франция",
    "gb": "Великобритания", "uk": "Великобритания", "lon": "Великобритания", "london": "Великобритания",
    "us": "США", "usa": "США", "nyc": "США", "newyork": "США",
    "tr": "Турция", "turkey": "Турция", "ist": "Турция", "istanbul": "Турция",
    "kz": "Казахстан", "kazakhstan": "Казахстан", "ala": "Казахстан", "almaty": "Казахстан",
    "ru": "Россия", "russia": "Россия", "mow": "Россия", "moscow": "Россия",
    "ch": "Швейцария", "switzerland": "Швейцария", "zrh": "Швейцария", "zurich": "Швейцария",
    "at": "Австрия", "austria": "Австрия", "vie": "Австрия", "vienna": "Австрия",
    "jp": "Япония", "japan": "Япония", "tyo": "Япония", "tokyo": "Япония",
    "sg": "Сингапур", "singapore": "Сингапур", "sin": "Сингапур",
    "ae": "ОАЭ", "uae": "ОАЭ", "dxb": "ОАЭ", "dubai": "ОАЭ",
}

# display name -> flag
LOCATION_FLAGS: Dict[str, str] = {
    "Нидерланды": "🇳🇱",
    "Германия": "🇩🇪",
    "Финляндия": "🇫🇮",
    "Швеция": "🇸🇪",
    "Польша": "🇵🇱",
    "Латвия": "🇱🇻",
    "Эстония": "🇪🇪",
    "Франция": "🇫🇷",
    "Великобритания": "🇬🇧",
    "США": "🇺🇸",
    "Турция": "🇹🇷",
    "Казахстан": "🇰🇿",
    "Россия": "🇷🇺",
    "Швейцария": "🇨🇭",
    "Австрия": "🇦🇹",
    "Япония": "🇯🇵",
    "Сингапур": "🇸🇬",
    "ОАЭ": "🇦🇪",
}


def _decode_base64_body(body: bytes) -> Optional[str]:
    compact = b"".join(body.split())
    if not compact or len(compact) % 4:
        return None
    try:
        text = compact.decode("ascii")
    except UnicodeDecodeError:
        return None
    if not _BASE64_BODY.match(text):
        return None
    try:
        decoded = base64.b64decode(text, validate=True)
        return decoded.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None


def _match_location(cleaned: str) -> Optional[str]:
    lowered = cleaned.lower()
    display_name = LOCATION_NAMES.get(lowered.replace(" ", ""))
    if display_name is not None:
        return display_name

    tokens = [token for token in _TOKEN_SPLIT.split(lowered) if token]
    if not tokens:
        return None
    # two-letter codes count only as the leading token
    if len(tokens[0]) == 2 and tokens[0] in LOCATION_NAMES:
        return LOCATION_NAMES[tokens[0]]
    for token in tokens:
        if len(token) >= 3 and token in LOCATION_NAMES:
            return LOCATION_NAMES[token]
    return None


def localize_location(raw: str) -> str:
    cleaned = _ANNOTATIONS.sub(" ", raw)
    cleaned = _LEADING_GLYPHS.sub("", cleaned)
    cleaned = " ".join(cleaned.split())
    if not cleaned:
        return raw

    name = _match_location(cleaned) or cleaned
    return f"{LOCATION_FLAGS.get(name, DEFAULT_FLAG)} {name}"


def _rewrite_line(line: str) -> str:
    match = _LINK_WITH_REMARK.match(line.rstrip("\r"))
    if not match:
        return line
    remark = unquote(match.group("remark"))
    if not remark.strip():
        return line
    localized = localize_location(remark)
    suffix = "\r" if line.endswith("\r") else ""
    return f"{match.group('link')}#{quote(localized, safe='')}{suffix}"


def _rewrite_text(text: str) -> str:
    return "\n".join(_rewrite_line(line) for line in text.split("\n"))


def try_rewrite(body: bytes) -> Outcome[bytes]:
    try:
        decoded = _decode_base64_body(body)
        if decoded is not None:
            rewritten = _rewrite_text(decoded)
            if rewritten == decoded:
                return Outcome.ok(body)
            return Outcome.ok(base64.b64encode(rewritten.encode("utf-8")))

        text, was_text = _as_text(body)
        if not was_text:
            return Outcome.ok(body)
        rewritten = _rewrite_text(text)
        if rewritten == text:
            return Outcome.ok(body)
        return Outcome.ok(rewritten.encode("utf-8"))
    except Exception as error:
        return Outcome.advisory(RewriteFailure(f"{type(error).__name__}: {error}"), fallback=body)


def _as_text(body: bytes) -> Tuple[str, bool]:
    try:
        return body.decode("utf-8"), True
    except UnicodeDecodeError:
        return "", False


def rewrite_subscription_body(body: bytes) -> bytes:
    outcome = try_rewrite(body)
    if outcome.is_advisory:
        logger.warning("Подписка отдана без изменений: %s", outcome.error)
    return outcome.value
