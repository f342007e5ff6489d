import logging
from datetime import timedelta

from app.services.subscription_gateway.decision_cache import Verdict
from app.services.subscription_gateway.device_registry import DeviceRegistry
from app.services.subscription_gateway.errors import DeviceLimitExceeded, DeviceRevoked

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_LIMIT = 5
DEFAULT_ACTIVITY_WINDOW = timedelta(hours=24)


class DevicePolicyEngine:
    """Allow/deny decision for a fingerprint against the registry and the device cap.

    Only devices seen inside the rolling activity window count towards the
    cap, so a phone that keeps changing networks does not burn through the
    slots for good. Revoked devices never count.

    Reads only: the registry row is written later, off the response path.
    Two brand-new fingerprints evaluated at the same time can therefore both
    see a free slot and both be allowed.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        *,
        device_limit: int = DEFAULT_DEVICE_LIMIT,
        activity_window: timedelta = DEFAULT_ACTIVITY_WINDOW,
    ):
        self.registry = registry
        self.device_limit = device_limit
        self.activity_window = activity_window

    async def evaluate(self, subscriber_ref: str, fingerprint: str) -> Verdict:
        state = await self.registry.get_state(subscriber_ref, fingerprint)

        if state.revoked:
            return Verdict.deny(DeviceRevoked())

        if state.known:
            return Verdict.allow()

        active = await self.registry.count_active(subscriber_ref, self.activity_window)
        if active >= self.device_limit:
            logger.info(
                "Device limit reached for %s: %s/%s active",
                subscriber_ref,
                active,
                self.device_limit,
            )
            return Verdict.deny(DeviceLimitExceeded(self.device_limit))

        return Verdict.allow()
