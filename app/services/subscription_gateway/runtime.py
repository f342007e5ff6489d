import asyncio
import logging
import time
from datetime import timedelta
from typing import Optional

import aiohttp
from aiogram import Bot
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings as default_settings
from app.services.background_tasks import DeferredWorkQueue, run_periodic
from app.services.subscription_gateway.decision_cache import DecisionCache
from app.services.subscription_gateway.device_policy import DevicePolicyEngine
from app.services.subscription_gateway.device_registry import DeviceRegistry
from app.services.subscription_gateway.gateway import SubscriptionGateway
from app.services.subscription_gateway.geo import GeoService
from app.services.subscription_gateway.notifier import NewDeviceNotifier
from app.services.subscription_gateway.upstream import UpstreamProxy
from app.utils.ttl_cache import Clock

logger = logging.getLogger(__name__)


def build_branding_headers(config: Settings) -> dict:
    branding = {
        "Profile-Title": config.get_profile_title_header(),
        "Profile-Update-Interval": str(config.SUBSCRIPTION_UPDATE_INTERVAL_HOURS),
        "Support-Url": config.SUBSCRIPTION_SUPPORT_URL,
    }
    return {name: value for name, value in branding.items() if value}


def create_notifier_bot(config: Settings) -> Optional[Bot]:
    if not config.is_notifications_enabled():
        return None
    return Bot(token=config.BOT_TOKEN)


class GatewayRuntime:
    """Long-lived resources of the gateway: HTTP session, bot, queue, sweeper."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        config: Settings = default_settings,
        bot: Optional[Bot] = None,
        notifier: Optional[NewDeviceNotifier] = None,
        clock: Clock = time.monotonic,
    ):
        self.config = config
        self.work_queue = DeferredWorkQueue(
            max_size=config.DEFERRED_QUEUE_MAX_SIZE,
            workers=config.DEFERRED_QUEUE_WORKERS,
            name="device-tracking",
        )
        self.registry = DeviceRegistry(session_factory)
        self.decision_cache = DecisionCache(
            cooldown_seconds=config.DECISION_CACHE_TTL_SECONDS,
            max_entries=config.DECISION_CACHE_MAX_ENTRIES,
            clock=clock,
        )
        self.geo = GeoService(
            lookup_url=config.GEO_LOOKUP_URL,
            timeout_seconds=config.GEO_LOOKUP_TIMEOUT_SECONDS,
            max_entries=config.GEO_CACHE_MAX_ENTRIES,
            clock=clock,
        )
        self.proxy = UpstreamProxy(
            None,
            base_url=config.get_upstream_base_url(),
            timeout_seconds=config.UPSTREAM_TIMEOUT_SECONDS,
            chunk_size=config.UPSTREAM_CHUNK_SIZE,
            branding=build_branding_headers(config),
        )
        if notifier is None:
            if bot is None:
                bot = create_notifier_bot(config)
            notifier = NewDeviceNotifier(
                bot,
                timezone_name=config.NOTIFICATION_TIMEZONE,
                enabled=config.NEW_DEVICE_NOTIFICATIONS_ENABLED,
            )
        self.notifier = notifier
        self.gateway = SubscriptionGateway(
            proxy=self.proxy,
            decision_cache=self.decision_cache,
            policy=DevicePolicyEngine(
                self.registry,
                device_limit=config.DEVICE_LIMIT,
                activity_window=timedelta(hours=config.DEVICE_ACTIVITY_WINDOW_HOURS),
            ),
            registry=self.registry,
            geo=self.geo,
            notifier=self.notifier,
            work_queue=self.work_queue,
            rewrite_enabled=config.SUBSCRIPTION_REWRITE_ENABLED,
        )
        self.http_session: Optional[aiohttp.ClientSession] = None
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.http_session is not None

    async def start(self) -> None:
        if self.is_running:
            return
        self.http_session = aiohttp.ClientSession(auto_decompress=True)
        self.proxy.bind_session(self.http_session)
        self.geo.bind_session(self.http_session)
        self.work_queue.start()
        self._sweeper = asyncio.create_task(
            run_periodic(
                "decision cache sweep",
                self.config.DECISION_CACHE_SWEEP_INTERVAL_SECONDS,
                self._sweep_decision_cache,
            ),
            name="decision-cache-sweeper",
        )
        logger.info(f"🚀 Шлюз подписок запущен, панель: {self.proxy.base_url}")

    async def _sweep_decision_cache(self) -> None:
        self.decision_cache.sweep()

    async def stop(self) -> None:
        if not self.is_running:
            return

        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        await self.work_queue.stop(timeout=self.config.DEFERRED_QUEUE_DRAIN_TIMEOUT_SECONDS)

        await self.http_session.close()
        self.http_session = None

        try:
            await self.notifier.close()
        except Exception as e:
            logger.error(f"Ошибка закрытия сессии бота: {e}")

        logger.info("✅ Шлюз подписок остановлен")
