"""Шлюз подписок: допуск устройства, проксирование в панель, учёт устройств.

Порядок обработки запросов ``/sub/{token}`` и ``/sub/{token}/info`` одинаков:

1. из токена извлекается subscriber_ref (не получилось - анонимный
   pass-through без учёта и лимитов);
2. вердикт берётся из кэша решений, иначе из политики устройств;
3. запрет - сразу 403, разрешение - запрос уходит в панель;
4. запись устройства, гео и уведомление выполняются в фоновой очереди
   после допуска и не задерживают ответ.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
from sqlalchemy.exc import SQLAlchemyError

from app.services.background_tasks import DeferredWorkQueue
from app.services.subscription_gateway.decision_cache import DecisionCache, Verdict, build_decision_key
from app.services.subscription_gateway.device_policy import DevicePolicyEngine
from app.services.subscription_gateway.device_registry import DeviceRegistry, build_fingerprint
from app.services.subscription_gateway.errors import (
    GatewayError,
    RegistryUnavailable,
    TokenUnresolved,
    UpstreamUnavailable,
)
from app.services.subscription_gateway.geo import GeoService
from app.services.subscription_gateway.notifier import NewDeviceNotifier
from app.services.subscription_gateway.rewriter import rewrite_subscription_body
from app.services.subscription_gateway.token_resolver import resolve_subscriber_ref
from app.services.subscription_gateway.upstream import (
    SubscriptionVariant,
    UpstreamProxy,
    UpstreamRequest,
)
from app.utils.outcome import Outcome

logger = logging.getLogger(__name__)

UNKNOWN_USER_AGENT = "unknown"


@dataclass(slots=True)
class SubscriptionRequest:
    token: str
    client_ip: str
    user_agent: str = UNKNOWN_USER_AGENT
    variant: SubscriptionVariant = SubscriptionVariant.PLAIN
    query_string: str = ""
    forwarded_proto: str = "https"
    forwarded_host: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class GatewayResponse:
    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None

    @classmethod
    def from_error(cls, error: GatewayError) -> "GatewayResponse":
        return cls(
            status_code=error.status_code,
            headers=[("Content-Type", "text/plain; charset=utf-8")],
            body=error.user_message.encode("utf-8"),
        )


class SubscriptionGateway:

    def __init__(
        self,
        *,
        proxy: UpstreamProxy,
        decision_cache: DecisionCache,
        policy: DevicePolicyEngine,
        registry: DeviceRegistry,
        geo: GeoService,
        notifier: NewDeviceNotifier,
        work_queue: DeferredWorkQueue,
        rewrite_enabled: bool = True,
    ):
        self.proxy = proxy
        self.decision_cache = decision_cache
        self.policy = policy
        self.registry = registry
        self.geo = geo
        self.notifier = notifier
        self.work_queue = work_queue
        self.rewrite_enabled = rewrite_enabled

    async def handle(self, request: SubscriptionRequest) -> GatewayResponse:
        subscriber_ref = resolve_subscriber_ref(request.token)

        admission = await self.admit(request, subscriber_ref)
        if admission.is_fatal:
            logger.info(
                f"🚫 Доступ к подписке {subscriber_ref} запрещён: {admission.error.user_message} "
                f"(IP {request.client_ip})"
            )
            return GatewayResponse.from_error(admission.error)
        if admission.is_advisory and not isinstance(admission.error, TokenUnresolved):
            logger.error(f"❌ Проверка устройства {subscriber_ref} пропущена: {admission.error}")
        if subscriber_ref:
            self._schedule_tracking(subscriber_ref, request)

        return await self._proxy(request)

    async def admit(self, request: SubscriptionRequest, subscriber_ref: Optional[str]) -> Outcome[Verdict]:
        if subscriber_ref is None:
            logger.debug(f"Токен {request.token[:10]}... не распознан, запрос проксируется без учёта")
            return Outcome.advisory(TokenUnresolved(), fallback=Verdict.allow())

        key = build_decision_key(request.token, request.user_agent, request.client_ip)
        verdict = self.decision_cache.lookup(key)
        if verdict is None:
            fingerprint = build_fingerprint(request.user_agent, request.client_ip)
            try:
                verdict = await self.policy.evaluate(subscriber_ref, fingerprint)
            except (SQLAlchemyError, OSError, asyncio.TimeoutError) as error:
                return Outcome.advisory(
                    RegistryUnavailable(f"{type(error).__name__}: {error}"),
                    fallback=Verdict.allow(),
                )
            self.decision_cache.store(key, verdict)

        if not verdict.allowed:
            return Outcome.fatal(verdict.error)
        return Outcome.ok(verdict)

    def _schedule_tracking(self, subscriber_ref: str, request: SubscriptionRequest) -> None:
        user_agent = request.user_agent
        ip = request.client_ip

        async def track() -> None:
            await self.track_device(subscriber_ref, user_agent=user_agent, ip=ip)

        self.work_queue.submit(track, description=f"track-device:{subscriber_ref}")

    async def track_device(self, subscriber_ref: str, *, user_agent: str, ip: str) -> None:
        country = await self.geo.country_of(ip)
        result = await self.registry.record_access(
            subscriber_ref,
            user_agent=user_agent,
            ip=ip,
            country=country,
        )
        if not result.created:
            return

        device = result.device
        logger.info(
            f"📱 Новое устройство {device.display_name} ({device.platform}) у {subscriber_ref}, "
            f"IP {ip}, страна {country or '-'}"
        )
        outcome = await self.notifier.notify_new_device(subscriber_ref, device)
        if outcome.is_advisory:
            logger.warning(f"⚠️ Уведомление о новом устройстве {subscriber_ref} не доставлено: {outcome.error}")

    async def _proxy(self, request: SubscriptionRequest) -> GatewayResponse:
        fetched = await self.proxy.fetch(
            UpstreamRequest(
                token=request.token,
                variant=request.variant,
                query_string=request.query_string,
                client_ip=request.client_ip,
                forwarded_proto=request.forwarded_proto,
                forwarded_host=request.forwarded_host,
                headers=request.headers,
            )
        )
        if fetched.is_fatal:
            return GatewayResponse.from_error(fetched.error)

        upstream = fetched.value
        if self._should_rewrite(request, upstream.status):
            try:
                body = await upstream.read()
            except (aiohttp.ClientError, asyncio.TimeoutError) as error:
                logger.error(f"❌ Не удалось прочитать подписку {request.token[:10]}... из панели: {error}")
                return GatewayResponse.from_error(UpstreamUnavailable(f"{type(error).__name__}: {error}"))
            return GatewayResponse(
                status_code=upstream.status,
                headers=upstream.headers,
                body=rewrite_subscription_body(body),
            )

        return GatewayResponse(
            status_code=upstream.status,
            headers=upstream.headers,
            stream=upstream.iter_body(),
        )

    def _should_rewrite(self, request: SubscriptionRequest, status: int) -> bool:
        return (
            self.rewrite_enabled
            and request.variant is SubscriptionVariant.PLAIN
            and status == 200
        )
