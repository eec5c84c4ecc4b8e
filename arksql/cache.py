import logging
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)


class TTLCache:
    """In-memory cache with per-entry expiry and a bounded size.

    Expired entries are never served. Sweeping is rate limited to once per
    ``sweep_interval`` seconds; after a sweep, if the cache still holds more
    than ``max_entries`` the oldest entries (by insertion timestamp) are evicted.
    Writes are last-writer-wins; no locking beyond dict atomicity.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int,
        sweep_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self.name = name
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if self._clock() - stored_at > self.ttl_seconds:
            # Logically expired; drop it so it cannot be served
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (value, self._clock())
        self._maybe_sweep()

    def clear(self) -> None:
        self._entries.clear()
        self._last_sweep = self._clock()

    def _maybe_sweep(self) -> None:
        now = self._clock()
        over_capacity = len(self._entries) > self.max_entries
        if not over_capacity and now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now

        expired = [k for k, (_, stored_at) in self._entries.items() if now - stored_at > self.ttl_seconds]
        for key in expired:
            self._entries.pop(key, None)

        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries.items(), key=lambda item: item[1][1])[:overflow]
            for key, _ in oldest:
                self._entries.pop(key, None)
        if expired or overflow > 0:
            logger.debug(f"[{self.name}] Swept {len(expired)} expired and {max(overflow, 0)} overflow entries. Size now {len(self._entries)}.")
