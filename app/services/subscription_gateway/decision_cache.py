import logging
import time
from dataclasses import dataclass
from typing import Optional

from app.services.subscription_gateway.errors import GatewayError
from app.utils.ttl_cache import Clock, OverflowPolicy, TTLCache

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 60
SWEEP_AGE_MULTIPLIER = 10


@dataclass(frozen=True, slots=True)
class Verdict:
    allowed: bool
    error: Optional[GatewayError] = None

    @property
    def reason(self) -> Optional[str]:
        return self.error.user_message if self.error else None

    @classmethod
    def allow(cls) -> "Verdict":
        return cls(allowed=True)

    @classmethod
    def deny(cls, error: GatewayError) -> "Verdict":
        return cls(allowed=False, error=error)


def build_decision_key(token: str, user_agent: str, ip: str) -> str:
    return f"{token}|{user_agent}|{ip}"


class DecisionCache:
    """Short-window memo of policy verdicts.

    A cached allow is not dropped when the device gets revoked; it stays valid
    until the cooldown runs out.
    """

    def __init__(
        self,
        *,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        max_entries: Optional[int] = None,
        clock: Clock = time.monotonic,
    ):
        self.cooldown_seconds = cooldown_seconds
        self._cache: TTLCache[str, Verdict] = TTLCache(
            ttl=cooldown_seconds,
            max_entries=max_entries,
            overflow=OverflowPolicy.EVICT_OLDEST,
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._cache)

    def lookup(self, key: str) -> Optional[Verdict]:
        return self._cache.get(key)

    def store(self, key: str, verdict: Verdict) -> None:
        self._cache.set(key, verdict)

    def sweep(self) -> int:
        removed = self._cache.sweep(self.cooldown_seconds * SWEEP_AGE_MULTIPLIER)
        if removed:
            logger.debug("Decision cache sweep removed %s entries", removed)
        return removed
