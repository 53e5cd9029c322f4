"""
In-process TTL caches.

Used for webhook replay suppression and cached thread views. Entries are
best-effort: losing the cache on restart only means a replay reaches the
database, where the unique constraint drops it anyway.
"""
import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class TTLCache(Protocol):
    """Interface the core relies on, so a shared cache can be swapped in."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ...

    def add(self, key: str, value: Any = True, ttl_seconds: Optional[float] = None) -> bool:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryTTLCache:
    """
    Thread-safe dict-backed cache with per-entry expiry.

    Expired entries are evicted lazily on access and in bulk whenever the
    cache grows past ``max_entries``; if that is not enough, the entries
    closest to expiry go next so the size never exceeds the cap.
    """

    def __init__(
        self,
        default_ttl_seconds: float = 600,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl_seconds = default_ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)
            if len(self._entries) > self.max_entries:
                self._evict()

    def add(self, key: str, value: Any = True, ttl_seconds: Optional[float] = None) -> bool:
        """
        Set ``key`` only if it is absent or expired.

        Returns:
            True if the key was added, False if a live entry already existed
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and entry[0] > now:
                return False
            self._entries[key] = (now + ttl, value)
            if len(self._entries) > self.max_entries:
                self._evict()
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict(self):
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} expired cache entries")

        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            by_expiry = sorted(self._entries.items(), key=lambda item: item[1][0])
            for key, _ in by_expiry[:overflow]:
                del self._entries[key]
            logger.debug(f"Evicted {overflow} live cache entries over the {self.max_entries} cap")
