import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response, StreamingResponse

from app.config import settings
from app.services.subscription_gateway.gateway import (
    UNKNOWN_USER_AGENT,
    GatewayResponse,
    SubscriptionGateway,
    SubscriptionRequest,
)
from app.services.subscription_gateway.upstream import SubscriptionVariant

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Subscription"])


def get_gateway(request: Request) -> SubscriptionGateway:
    return request.app.state.gateway


def get_client_ip(request: Request, *, trust_forwarded: Optional[bool] = None) -> str:
    if trust_forwarded is None:
        trust_forwarded = settings.TRUST_FORWARDED_HEADERS

    if trust_forwarded:
        real_ip = (request.headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip
        forwarded_for = request.headers.get("x-forwarded-for") or ""
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    return request.client.host if request.client else ""


def _build_subscription_request(
    request: Request,
    token: str,
    variant: SubscriptionVariant,
) -> SubscriptionRequest:
    trusted = settings.TRUST_FORWARDED_HEADERS
    forwarded_proto = request.headers.get("x-forwarded-proto") if trusted else None
    forwarded_host = request.headers.get("x-forwarded-host") if trusted else None
    return SubscriptionRequest(
        token=token,
        client_ip=get_client_ip(request, trust_forwarded=trusted),
        user_agent=request.headers.get("user-agent") or UNKNOWN_USER_AGENT,
        variant=variant,
        query_string=request.url.query,
        forwarded_proto=forwarded_proto or request.url.scheme,
        forwarded_host=forwarded_host or request.headers.get("host"),
        headers=dict(request.headers),
    )


def _encode_header(name: str, value: str) -> tuple:
    # aiohttp decodes header bytes with surrogateescape; this restores them
    return name.encode("latin-1"), value.encode("utf-8", "surrogateescape")


def to_http_response(result: GatewayResponse) -> Response:
    if result.stream is not None:
        response = StreamingResponse(result.stream, status_code=result.status_code)
    else:
        response = Response(content=result.body or b"", status_code=result.status_code)
    # Starlette lowercases names passed via ``headers``; keep upstream spelling
    response.raw_headers.extend(_encode_header(name, value) for name, value in result.headers)
    return response


@router.get("/sub/{token}")
async def get_subscription(
    token: str,
    request: Request,
    gateway: SubscriptionGateway = Depends(get_gateway),
) -> Response:
    result = await gateway.handle(_build_subscription_request(request, token, SubscriptionVariant.PLAIN))
    return to_http_response(result)


@router.get("/sub/{token}/info")
async def get_subscription_info(
    token: str,
    request: Request,
    gateway: SubscriptionGateway = Depends(get_gateway),
) -> Response:
    result = await gateway.handle(_build_subscription_request(request, token, SubscriptionVariant.INFO))
    return to_http_response(result)
