"""Определение страны по IP-адресу клиента."""

import asyncio
import ipaddress
import logging
import time
from typing import Optional

import aiohttp

from app.services.subscription_gateway.errors import GeoLookupFailure
from app.utils.outcome import Outcome
from app.utils.ttl_cache import Clock, OverflowPolicy, TTLCache

logger = logging.getLogger(__name__)

LOCAL_COUNTRY_MARKER = "LOCAL"
DEFAULT_LOOKUP_URL = "https://ipinfo.io/{ip}/json"


class GeoService:
    """Country lookup with its own capped cache.

    The cache is wiped whole once it grows past ``max_entries``. Failed
    lookups are not cached.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        lookup_url: str = DEFAULT_LOOKUP_URL,
        timeout_seconds: float = 3.0,
        max_entries: int = 10000,
        clock: Clock = time.monotonic,
    ):
        self._session = session
        self.lookup_url = lookup_url
        self.timeout_seconds = timeout_seconds
        self._cache: TTLCache[str, str] = TTLCache(
            ttl=None,
            max_entries=max_entries,
            overflow=OverflowPolicy.CLEAR,
            clock=clock,
        )

    def bind_session(self, session: aiohttp.ClientSession) -> None:
        self._session = session

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def country_of(self, ip: Optional[str]) -> Optional[str]:
        outcome = await self.lookup(ip)
        if outcome.is_advisory:
            logger.warning("Не удалось определить страну для %s: %s", ip, outcome.error)
        return outcome.value

    async def lookup(self, ip: Optional[str]) -> Outcome[str]:
        if not ip:
            return Outcome.ok(None)

        try:
            address = ipaddress.ip_address(ip.strip())
        except ValueError:
            return Outcome.ok(None)

        if address.is_loopback or address.is_private or address.is_link_local or address.is_unspecified:
            return Outcome.ok(LOCAL_COUNTRY_MARKER)

        key = str(address)
        cached = self._cache.get(key)
        if cached is not None:
            return Outcome.ok(cached)

        if self._session is None:
            return Outcome.advisory(GeoLookupFailure("HTTP session is not configured"))

        try:
            async with self._session.get(
                self.lookup_url.format(ip=key),
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                if not 200 <= response.status < 300:
                    return Outcome.advisory(GeoLookupFailure(f"lookup returned HTTP {response.status}"))
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as error:
            return Outcome.advisory(GeoLookupFailure(f"{type(error).__name__}: {error}"))

        country = (data.get("country") or data.get("countryCode")) if isinstance(data, dict) else None
        if not isinstance(country, str) or not country.strip():
            return Outcome.advisory(GeoLookupFailure("lookup response has no country"))

        country = country.strip().upper()
        self._cache.set(key, country)
        return Outcome.ok(country)
