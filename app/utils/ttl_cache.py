from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]


class OverflowPolicy(str, Enum):
    CLEAR = "clear"
    EVICT_OLDEST = "evict_oldest"


@dataclass(slots=True)
class _Entry(Generic[V]):
    value: V
    stored_at: float


class TTLCache(Generic[K, V]):
    """In-process map with per-entry age, explicit capacity and injectable clock.

    ``ttl`` of ``None`` keeps entries until they are swept or pushed out by
    the overflow policy.
    """

    def __init__(
        self,
        *,
        ttl: Optional[float],
        max_entries: Optional[int] = None,
        overflow: OverflowPolicy = OverflowPolicy.EVICT_OLDEST,
        clock: Clock = time.monotonic,
    ):
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._ttl = ttl
        self._max_entries = max_entries
        self._overflow = overflow
        self._clock = clock
        self._entries: Dict[K, _Entry[V]] = {}

    @property
    def ttl(self) -> Optional[float]:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: K) -> bool:
        return self.get(key) is not None

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: K, value: V) -> None:
        # re-inserted keys move to the end, so dict order is stored_at order
        self._entries.pop(key, None)
        if self._max_entries is not None and len(self._entries) >= self._max_entries:
            self._make_room()
        self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self, max_age: Optional[float] = None) -> int:
        """Drop entries older than ``max_age`` (default: the ttl). Returns how many were removed."""
        limit = max_age if max_age is not None else self._ttl
        if limit is None:
            return 0
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if now - entry.stored_at > limit]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def _is_expired(self, entry: _Entry[V], now: float) -> bool:
        return self._ttl is not None and now - entry.stored_at >= self._ttl

    def _make_room(self) -> None:
        if self._overflow is OverflowPolicy.CLEAR:
            self._entries.clear()
            return
        del self._entries[next(iter(self._entries))]
