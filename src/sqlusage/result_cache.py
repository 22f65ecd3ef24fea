import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

from .models import AnalysisResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
DEFAULT_MAX_ENTRIES = 100
DEFAULT_SWEEP_INTERVAL_SECONDS = 600

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    timestamp: float


class TTLCache(Generic[V]):
    """Bounded mapping whose entries expire ``ttl_seconds`` after they were written.

    Reads check the age of the entry; writes beyond ``max_entries`` evict the
    entry with the oldest timestamp. All access is serialized by one lock.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: Dict[Hashable, CacheEntry[V]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp >= self.ttl_seconds

    def get_item(self, key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self._expired(entry, self.clock()):
                del self._entries[key]
                self.expirations += 1
                self.misses += 1
                return None
            self.hits += 1
            return entry.value

    def put_item(self, key: Hashable, value: V):
        with self._lock:
            self._entries[key] = CacheEntry(value=value, timestamp=self.clock())
            while len(self._entries) > self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].timestamp)
                del self._entries[oldest]
                self.evictions += 1

    def remove_where(self, predicate: Callable[[Hashable], bool]) -> int:
        with self._lock:
            doomed = [k for k in self._entries if predicate(k)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def clear(self) -> int:
        return self.remove_where(lambda _: True)

    def purge_expired(self) -> int:
        with self._lock:
            now = self.clock()
            doomed = [k for k, e in self._entries.items() if self._expired(e, now)]
            for k in doomed:
                del self._entries[k]
            self.expirations += len(doomed)
        if doomed:
            logger.debug(f"Purged {len(doomed)} expired cache entries")
        return len(doomed)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            now = self.clock()
            ages = [now - e.timestamp for e in self._entries.values()]
            lookups = self.hits + self.misses
            return {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "expirations": self.expirations,
                "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
                "oldest_age_seconds": round(max(ages), 3) if ages else 0.0,
                "newest_age_seconds": round(min(ages), 3) if ages else 0.0,
            }


def _key(database: str, object_name: str) -> Tuple[str, str]:
    return (database or "").strip().lower(), (object_name or "").strip()


class ResultCache(TTLCache[AnalysisResult]):
    """Analysis results keyed by (database, object name); database names are case-insensitive."""

    def get(self, database: str, object_name: str) -> Optional[AnalysisResult]:
        result = self.get_item(_key(database, object_name))
        logger.debug(f"Cache {'hit' if result is not None else 'miss'} for {database}.{object_name}")
        return result

    def put(self, database: str, object_name: str, result: AnalysisResult):
        self.put_item(_key(database, object_name), result)

    def invalidate(self, database: Optional[str] = None) -> int:
        if database is None:
            removed = self.clear()
        else:
            db = (database or "").strip().lower()
            removed = self.remove_where(lambda key: key[0] == db)
        logger.info(f"Invalidated {removed} cached results" + (f" for {database}" if database else ""))
        return removed


class CacheSweeper(threading.Thread):
    """Daemon thread that periodically drops expired entries from one or more caches."""

    def __init__(self, *caches: TTLCache, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS):
        super().__init__(name="sqlusage-cache-sweeper", daemon=True)
        self.caches = caches
        self.interval_seconds = interval_seconds
        self._stopped = threading.Event()

    def run(self):
        while not self._stopped.wait(self.interval_seconds):
            for cache in self.caches:
                try:
                    cache.purge_expired()
                except Exception as e:
                    logger.error(f"Cache sweep failed: {e}")

    def stop(self, timeout: Optional[float] = None):
        self._stopped.set()
        if self.is_alive():
            self.join(timeout)
