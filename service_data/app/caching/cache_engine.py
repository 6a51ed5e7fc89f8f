"""
In-process cache engine for the Data service.

Values are stored per process with an optional TTL. JSON-serializable values
are stored as their JSON encoding, gzip-compressed when it exceeds the
compression threshold, and decoded afresh on every read, so callers never
share mutable state with the cache. Every locally originated mutation is
handed to an optional broadcast callback so peer nodes can mirror it.
"""

import asyncio
import gzip
import json
import threading
import time
import zlib
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING, Union

from shared.errors import ValidationError
from shared.logging import get_logger
from .messages import CacheSyncMessage, SyncAction

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


COMPRESSION_THRESHOLD = 1024
SWEEP_INTERVAL_SECONDS = 60.0
INVALID_KEY_MARKERS = ("undefined", "null")

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

# Keys revisited more than this many times count as hot
HOT_VISIT_THRESHOLD = 5
HOT_TTL_MS = 30 * MINUTE_MS
WARM_TTL_MS = 2 * HOUR_MS
COLD_TTL_MS = 6 * HOUR_MS

BroadcastCallback = Callable[[CacheSyncMessage], None]


class TTLMode(str, Enum):
    """TTL policy tiers."""
    IMMEDIATE = "immediate"
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"
    DYNAMIC = "dynamic"


FIXED_TTL_MS = {
    TTLMode.IMMEDIATE: 5 * MINUTE_MS,
    TTLMode.SHORT: 30 * MINUTE_MS,
    TTLMode.MEDIUM: 2 * HOUR_MS,
    TTLMode.LONG: 6 * HOUR_MS,
}


@dataclass
class CacheEntry:
    """A stored cache value.

    ``payload`` is gzip bytes when ``compressed``, JSON text when only
    ``encoded``, and the caller's object when neither.
    """
    payload: Any
    expires_at: int = 0
    compressed: bool = False
    encoded: bool = False

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at > 0 and self.expires_at <= now_ms


class CacheEngine:
    """Process-local key/value cache with TTL, compression and sync hooks."""

    def __init__(
        self,
        node_id: str,
        *,
        compression_threshold: int = COMPRESSION_THRESHOLD,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.node_id = node_id
        self.compression_threshold = compression_threshold
        self.sweep_interval = sweep_interval
        self.metrics = metrics
        self.logger = get_logger("data.cache")

        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._entries_lock = threading.Lock()
        self._visits: Dict[str, int] = {}
        self._visits_lock = threading.Lock()
        self._broadcast_callback: Optional[BroadcastCallback] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._hits = 0
        self._misses = 0

    def set_broadcast_callback(self, callback: Optional[BroadcastCallback]) -> None:
        """Register (or clear, with None) the hook that propagates mutations."""
        self._broadcast_callback = callback

    def set(self, key: str, value: Any, ttl_seconds: float = 0, *, is_internal: bool = False) -> Any:
        """Store ``value`` under ``key`` and return it.

        ``is_internal`` marks a write that is itself the application of a
        remote sync message; such writes are not broadcast again.
        """
        if self._is_invalid_key(key):
            self.logger.warning("Invalid cache key rejected", key=key)
            return value

        with self._entries_lock:
            expires_at = self.now_ms() + int(ttl_seconds * 1000) if ttl_seconds > 0 else 0
            entry = self._encode(key, value)
            entry.expires_at = expires_at
            self._entries[key] = entry
            entry_count = len(self._entries)

        self._count("cache_sets_total", compressed=str(entry.compressed).lower())
        if self.metrics:
            self.metrics.set_gauge("cache_entries", entry_count)

        if not is_internal:
            # peers get a snapshot taken now, not the caller's live object
            snapshot = self._decode(entry) if entry.encoded else value
            self._broadcast(SyncAction.SET, key, payload=snapshot, expires_at=expires_at)
        return value

    def get(self, key: str) -> Optional[Any]:
        """Return the live value for ``key``, or None."""
        evicted: Optional[str] = None
        value: Optional[Any] = None
        found = False

        with self._entries_lock:
            entry = self._entries.get(key)
            if entry is None:
                pass
            elif entry.is_expired(self.now_ms()):
                del self._entries[key]
                evicted = "expired"
            elif entry.compressed or entry.encoded:
                try:
                    value = self._decode(entry)
                    found = True
                except (OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError):
                    del self._entries[key]
                    evicted = "corrupt"
            else:
                value = entry.payload
                found = True

            if found:
                self._hits += 1
            else:
                self._misses += 1

        if evicted == "corrupt":
            self.logger.warning("Dropped undecodable cache entry", key=key)
        if evicted:
            self._count("cache_evictions_total", reason=evicted)
        self._count("cache_hits_total" if found else "cache_misses_total", cache_type="engine")
        return value

    def delete(self, key: str, *, is_internal: bool = False) -> bool:
        """Remove ``key``; returns whether an entry existed."""
        with self._entries_lock:
            existed = self._entries.pop(key, None) is not None

        if not is_internal:
            self._broadcast(SyncAction.DELETE, key)
        return existed

    def invalidate_by_prefix(self, prefix: str, *, is_internal: bool = False) -> int:
        """Remove every entry whose key starts with ``prefix``."""
        with self._entries_lock:
            removed = [key for key in self._entries if key.startswith(prefix)]
            for key in removed:
                del self._entries[key]

        if removed:
            self.logger.info("Invalidated cache prefix", prefix=prefix, keys_count=len(removed))
            self._count("cache_evictions_total", reason="invalidated")

        if not is_internal:
            for key in removed:
                self._broadcast(SyncAction.INVALIDATE, key)
        return len(removed)

    def get_dynamic_ttl(self, key: str, mode: Union[TTLMode, str] = TTLMode.DYNAMIC) -> int:
        """Return a TTL in milliseconds for ``key`` under the given policy.

        Fixed tiers return a constant. ``dynamic`` counts visits per key:
        frequently revisited keys are assumed to change more often and get
        the shortest TTL, while first-time keys are cached longest.
        """
        try:
            mode = TTLMode(mode)
        except ValueError:
            raise ValidationError(f"Unknown TTL mode: {mode}", details={"mode": str(mode)})

        if mode is not TTLMode.DYNAMIC:
            return FIXED_TTL_MS[mode]

        with self._visits_lock:
            prior_visits = self._visits.get(key, 0)
            self._visits[key] = prior_visits + 1

        if prior_visits > HOT_VISIT_THRESHOLD:
            return HOT_TTL_MS
        if prior_visits > 0:
            return WARM_TTL_MS
        return COLD_TTL_MS

    def keys(self, prefix: Optional[str] = None) -> List[str]:
        """Snapshot of live keys, optionally restricted to a prefix."""
        now = self.now_ms()
        with self._entries_lock:
            return [
                key for key, entry in self._entries.items()
                if not entry.is_expired(now) and (prefix is None or key.startswith(prefix))
            ]

    def sweep_expired(self) -> int:
        """Physically remove expired entries."""
        now = self.now_ms()
        with self._entries_lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            entry_count = len(self._entries)

        if expired:
            self.logger.debug("Swept expired cache entries", count=len(expired))
            self._count("cache_evictions_total", reason="swept")
        if self.metrics:
            self.metrics.set_gauge("cache_entries", entry_count)
        return len(expired)

    async def start(self):
        """Start the background expiration sweep."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info("Cache sweep started", interval_seconds=self.sweep_interval)

    async def stop(self):
        """Stop the background expiration sweep."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._sweep_task
        self._sweep_task = None
        self.logger.info("Cache sweep stopped")

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._entries_lock:
            entries = len(self._entries)
            compressed = sum(1 for entry in self._entries.values() if entry.compressed)
            hits, misses = self._hits, self._misses
        with self._visits_lock:
            tracked = len(self._visits)

        total = hits + misses
        return {
            "node_id": self.node_id,
            "entries": entries,
            "compressed_entries": compressed,
            "tracked_keys": tracked,
            "hits": hits,
            "misses": misses,
            "hit_ratio": round(hits / total, 4) if total else 0.0,
            "sweep_running": self.is_running,
        }

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep_expired()

    def _encode(self, key: str, value: Any) -> CacheEntry:
        """Store JSON text, compressed past the threshold; non-JSON values as-is."""
        try:
            serialized = json.dumps(value)
            encoded = serialized.encode("utf-8")
            if len(encoded) > self.compression_threshold:
                return CacheEntry(payload=gzip.compress(encoded), compressed=True, encoded=True)
            return CacheEntry(payload=serialized, encoded=True)
        except (TypeError, ValueError, OverflowError, RecursionError, OSError, zlib.error) as exc:
            self.logger.debug("Storing cache value by reference", key=key, error=str(exc))
        return CacheEntry(payload=value)

    @staticmethod
    def _decode(entry: CacheEntry) -> Any:
        if entry.compressed:
            return json.loads(gzip.decompress(entry.payload).decode("utf-8"))
        return json.loads(entry.payload)

    def _broadcast(
        self,
        action: SyncAction,
        key: str,
        payload: Any = None,
        expires_at: Optional[int] = None,
    ) -> None:
        callback = self._broadcast_callback
        if callback is None:
            return

        message = CacheSyncMessage(
            action=action,
            key=key,
            payload=payload,
            expires_at=expires_at,
            origin_node_id=self.node_id,
        )
        try:
            callback(message)
        except Exception as exc:
            self.logger.error("Cache broadcast failed", action=action.value, key=key, error=str(exc))
            return
        self._count("cache_sync_messages_total", direction="out", action=action.value)

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _is_invalid_key(key: str) -> bool:
        return any(marker in key for marker in INVALID_KEY_MARKERS)
