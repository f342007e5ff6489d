"""Проксирование запроса подписки в панель (Remnawave/Marzban)."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
from yarl import URL

from app.services.subscription_gateway.errors import UpstreamUnavailable
from app.utils.outcome import Outcome

logger = logging.getLogger(__name__)

HeaderList = List[Tuple[str, str]]


class SubscriptionVariant(str, Enum):
    PLAIN = "plain"
    INFO = "info"


# Request headers copied from the VPN client as-is
FORWARDED_REQUEST_HEADERS = (
    "User-Agent",
    "Accept",
    "Accept-Language",
    "If-None-Match",
    "If-Modified-Since",
)

# Hop-by-hop, transport and headers this service owns itself
DROPPED_RESPONSE_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-connection",
    "transfer-encoding",
    "content-length",
    "content-encoding",
    "upgrade",
    "trailer",
    "te",
    "server",
    "date",
})
DROPPED_RESPONSE_HEADER_PREFIXES = ("access-control-",)

# Some clients only read these with this exact spelling
CANONICAL_HEADER_NAMES: Dict[str, str] = {
    "profile-title": "Profile-Title",
    "profile-update-interval": "Profile-Update-Interval",
    "subscription-userinfo": "Subscription-Userinfo",
    "profile-web-page-url": "Profile-Web-Page-Url",
    "support-url": "Support-Url",
    "content-disposition": "Content-Disposition",
    "announce": "Announce",
    "routing": "Routing",
}


@dataclass(slots=True)
class UpstreamRequest:
    token: str
    variant: SubscriptionVariant = SubscriptionVariant.PLAIN
    query_string: str = ""
    client_ip: Optional[str] = None
    forwarded_proto: str = "https"
    forwarded_host: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


class UpstreamResponse:
    """Open upstream response: status and filtered headers now, body on demand.

    The body is consumed once, with ``iter_body`` or ``read``; both free the
    upstream connection when they finish.
    """

    def __init__(self, response: aiohttp.ClientResponse, headers: HeaderList, *, chunk_size: int):
        self._response = response
        self.status = response.status
        self.headers = headers
        self._chunk_size = chunk_size

    async def read(self) -> bytes:
        try:
            return await self._response.read()
        finally:
            self._response.release()

    async def iter_body(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.content.iter_chunked(self._chunk_size):
                yield chunk
        except asyncio.CancelledError:
            logger.debug("Клиент отключился во время передачи подписки")
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            logger.warning("Передача подписки из панели прервана: %s", error)
        finally:
            self._response.release()


def filter_response_headers(raw_headers: HeaderList) -> HeaderList:
    filtered: HeaderList = []
    for name, value in raw_headers:
        lowered = name.lower()
        if lowered in DROPPED_RESPONSE_HEADERS:
            continue
        if lowered.startswith(DROPPED_RESPONSE_HEADER_PREFIXES):
            continue
        filtered.append((CANONICAL_HEADER_NAMES.get(lowered, name), value))
    return filtered


def apply_branding_defaults(headers: HeaderList, branding: Dict[str, str]) -> HeaderList:
    present = {name.lower() for name, _ in headers}
    result = list(headers)
    for name, value in branding.items():
        if value and name.lower() not in present:
            result.append((CANONICAL_HEADER_NAMES.get(name.lower(), name), value))
    return result


class UpstreamProxy:
    """Single-path proxy to the control plane's subscription endpoint. No retries."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession],
        *,
        base_url: str,
        timeout_seconds: float = 15.0,
        chunk_size: int = 16384,
        branding: Optional[Dict[str, str]] = None,
    ):
        self._session = session
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.chunk_size = chunk_size
        self.branding = branding or {}

    def bind_session(self, session: aiohttp.ClientSession) -> None:
        self._session = session

    def build_url(self, request: UpstreamRequest) -> str:
        url = f"{self.base_url}/sub/{request.token}"
        if request.variant is SubscriptionVariant.INFO:
            url += "/info"
        if request.query_string:
            url += f"?{request.query_string}"
        return url

    def build_headers(self, request: UpstreamRequest) -> Dict[str, str]:
        incoming = {name.lower(): value for name, value in request.headers.items()}
        headers: Dict[str, str] = {}
        for name in FORWARDED_REQUEST_HEADERS:
            value = incoming.get(name.lower())
            if value:
                headers[name] = value
        headers.setdefault("Accept", "*/*")
        if request.client_ip:
            headers["X-Real-IP"] = request.client_ip
            headers["X-Forwarded-For"] = request.client_ip
        headers["X-Forwarded-Proto"] = request.forwarded_proto or "https"
        if request.forwarded_host:
            headers["X-Forwarded-Host"] = request.forwarded_host
        return headers

    async def fetch(self, request: UpstreamRequest) -> Outcome[UpstreamResponse]:
        if self._session is None:
            return Outcome.fatal(UpstreamUnavailable("HTTP session is not configured"))

        url = self.build_url(request)
        try:
            response = await self._session.get(
                # the token and query are forwarded verbatim
                URL(url, encoded=True),
                headers=self.build_headers(request),
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                allow_redirects=False,
            )
        except asyncio.CancelledError:
            logger.debug("Запрос подписки %s... отменён клиентом", request.token[:10])
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as error:
            logger.error(
                "Панель недоступна для подписки %s...: %s",
                request.token[:10],
                f"{type(error).__name__}: {error}",
            )
            return Outcome.fatal(UpstreamUnavailable(str(error) or type(error).__name__))

        if response.status >= 500:
            logger.warning("Панель вернула %s для подписки %s...", response.status, request.token[:10])
            response.release()
            return Outcome.fatal(UpstreamUnavailable(f"upstream returned HTTP {response.status}"))

        headers = filter_response_headers(list(response.headers.items()))
        if response.status < 400:
            headers = apply_branding_defaults(headers, self.branding)
        return Outcome.ok(UpstreamResponse(response, headers, chunk_size=self.chunk_size))
