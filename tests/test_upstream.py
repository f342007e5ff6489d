import asyncio

import aiohttp
import pytest

from app.config import Settings
from app.services.subscription_gateway.errors import UpstreamUnavailable
from app.services.subscription_gateway.runtime import build_branding_headers
from app.services.subscription_gateway.upstream import (
    SubscriptionVariant,
    UpstreamProxy,
    UpstreamRequest,
    apply_branding_defaults,
    filter_response_headers,
)


def test_filter_drops_hop_by_hop_and_cors_headers():
    headers = [
        ("Connection", "keep-alive"),
        ("Transfer-Encoding", "chunked"),
        ("Content-Length", "120"),
        ("Content-Encoding", "gzip"),
        ("Server", "nginx"),
        ("Date", "Mon, 19 Oct 2026 10:00:00 GMT"),
        ("Access-Control-Allow-Origin", "*"),
        ("access-control-expose-headers", "profile-title"),
        ("Content-Type", "text/plain"),
        ("ETag", '"abc"'),
    ]

    assert filter_response_headers(headers) == [("Content-Type", "text/plain"), ("ETag", '"abc"')]


def test_filter_applies_canonical_casing():
    headers = [
        ("profile-title", "base64:T3V0bGl2aW9u"),
        ("SUBSCRIPTION-USERINFO", "upload=0; download=0"),
        ("profile-web-page-url", "https://example.com"),
        ("content-disposition", 'attachment; filename="tg_978855516"'),
        ("announce", "hello"),
        ("routing", "happ://routing/abc"),
        ("x-custom", "kept"),
    ]

    assert [name for name, _ in filter_response_headers(headers)] == [
        "Profile-Title",
        "Subscription-Userinfo",
        "Profile-Web-Page-Url",
        "Content-Disposition",
        "Announce",
        "Routing",
        "x-custom",
    ]


def test_branding_fills_only_missing_headers():
    headers = [("Profile-Update-Interval", "6")]
    branding = {"Profile-Title": "Outlivion VPN", "Profile-Update-Interval": "12", "Support-Url": ""}

    assert apply_branding_defaults(headers, branding) == [
        ("Profile-Update-Interval", "6"),
        ("Profile-Title", "Outlivion VPN"),
    ]


def test_branding_headers_from_settings():
    config = Settings(
        _env_file=None,
        SUBSCRIPTION_PROFILE_TITLE="Outlivion VPN 🚀",
        SUBSCRIPTION_UPDATE_INTERVAL_HOURS=12,
        SUBSCRIPTION_SUPPORT_URL=None,
    )

    branding = build_branding_headers(config)

    assert branding["Profile-Title"].startswith("base64:")
    assert branding["Profile-Update-Interval"] == "12"
    assert "Support-Url" not in branding


def test_url_and_forwarded_headers():
    proxy = UpstreamProxy(None, base_url="http://panel:8000/")
    request = UpstreamRequest(
        token="abc%3D",
        variant=SubscriptionVariant.INFO,
        query_string="flag=v2ray&x=%2F",
        client_ip="203.0.113.5",
        forwarded_proto="https",
        forwarded_host="sub.example.com",
        headers={"user-agent": "Happ/2.3.1", "cookie": "secret", "if-none-match": '"v1"'},
    )

    assert proxy.build_url(request) == "http://panel:8000/sub/abc%3D/info?flag=v2ray&x=%2F"
    assert proxy.build_headers(request) == {
        "User-Agent": "Happ/2.3.1",
        "If-None-Match": '"v1"',
        "Accept": "*/*",
        "X-Real-IP": "203.0.113.5",
        "X-Forwarded-For": "203.0.113.5",
        "X-Forwarded-Proto": "https",
        "X-Forwarded-Host": "sub.example.com",
    }


async def test_fetch_without_session_is_fatal():
    proxy = UpstreamProxy(None, base_url="http://panel:8000")

    outcome = await proxy.fetch(UpstreamRequest(token="abc"))

    assert outcome.is_fatal
    assert isinstance(outcome.error, UpstreamUnavailable)


class TimingOutSession:
    async def get(self, *args, **kwargs):
        raise asyncio.TimeoutError()


async def test_fetch_timeout_is_fatal():
    proxy = UpstreamProxy(TimingOutSession(), base_url="http://panel:8000", timeout_seconds=0.5)

    outcome = await proxy.fetch(UpstreamRequest(token="abc"))

    assert outcome.is_fatal
    assert outcome.error.status_code == 502


@pytest.mark.parametrize("status", [500, 502, 504])
async def test_fetch_maps_server_errors_to_bad_gateway(control_plane, status):
    control_plane.status = status
    async with aiohttp.ClientSession() as session:
        proxy = UpstreamProxy(session, base_url=control_plane.base_url)
        outcome = await proxy.fetch(UpstreamRequest(token="abc"))

    assert outcome.is_fatal
    assert outcome.error.user_message == "Bad Gateway"


async def test_fetch_streams_body_in_chunks(control_plane):
    control_plane.body = b"x" * 10000
    async with aiohttp.ClientSession() as session:
        proxy = UpstreamProxy(session, base_url=control_plane.base_url, chunk_size=1024)
        outcome = await proxy.fetch(UpstreamRequest(token="abc"))
        chunks = [chunk async for chunk in outcome.value.iter_body()]

    assert b"".join(chunks) == control_plane.body
    assert all(len(chunk) <= 1024 for chunk in chunks)
