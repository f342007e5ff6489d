import hashlib
import json
import logging
from datetime import UTC, datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database.crud.device import (
    DeviceState,
    DeviceUpsertResult,
    SubscriberDevice,
    count_active_devices,
    get_device_state,
    list_devices,
    revoke_device,
    revoke_device_by_fingerprint,
    upsert_device,
)
from app.utils.user_agent import parse_client_string

logger = logging.getLogger(__name__)


def build_fingerprint(user_agent: str, ip: str) -> str:
    fingerprint_data = {
        'ip': ip,
        'user_agent': user_agent,
    }
    fingerprint_str = json.dumps(fingerprint_data, sort_keys=True)
    return hashlib.sha256(fingerprint_str.encode()).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DeviceRegistry:
    """Durable per-subscriber device store; one short session per operation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._now = now

    async def get_state(self, subscriber_ref: str, fingerprint: str) -> DeviceState:
        async with self._session_factory() as db:
            return await get_device_state(db, subscriber_ref, fingerprint)

    async def count_active(self, subscriber_ref: str, window: timedelta) -> int:
        async with self._session_factory() as db:
            return await count_active_devices(db, subscriber_ref, window=window, now=self._now())

    async def record_access(
        self,
        subscriber_ref: str,
        *,
        user_agent: str,
        ip: str,
        country: Optional[str] = None,
    ) -> DeviceUpsertResult:
        client = parse_client_string(user_agent)
        async with self._session_factory() as db:
            return await upsert_device(
                db,
                subscriber_ref=subscriber_ref,
                fingerprint=build_fingerprint(user_agent, ip),
                user_agent=user_agent,
                display_name=client.display_name,
                platform=client.platform,
                ip=ip,
                country=country,
                now=self._now(),
            )

    async def list_devices(self, subscriber_ref: str) -> List[SubscriberDevice]:
        async with self._session_factory() as db:
            return await list_devices(db, subscriber_ref)

    async def revoke(self, subscriber_ref: str, fingerprint: str) -> bool:
        async with self._session_factory() as db:
            revoked = await revoke_device_by_fingerprint(db, subscriber_ref, fingerprint, now=self._now())
        if revoked:
            logger.info("Device %s... of %s revoked", fingerprint[:12], subscriber_ref)
        return revoked

    async def revoke_by_id(self, device_id: str, *, subscriber_ref: Optional[str] = None) -> bool:
        async with self._session_factory() as db:
            revoked = await revoke_device(db, device_id, subscriber_ref=subscriber_ref, now=self._now())
        if revoked:
            logger.info("Device %s revoked", device_id)
        return revoked
