"""TTL memo for prediction results.

Entries are keyed by a SHA-256 of the four request inputs and are never
persisted: after a restart every prediction is recomputed from inputs.
A missing or expired entry is not an error, it just means a miss.

Usage::

    cache = PredictionCache(PredictionCacheConfig(ttl_seconds=600))
    key = prediction_key(price, lower, upper, horizon)
    hit = cache.get(key, now=now)
    if hit is None:
        cache.store(key, compute(), now=now)
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional

from deltaguard.errors import InvalidInput, InvalidInputReason

if TYPE_CHECKING:
    from deltaguard.predictor import PredictionResult

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PredictionCacheConfig:
    """Configuration for the prediction cache.

    Parameters
    ----------
    ttl_seconds:
        Entry lifetime. Default 600 (10 minutes). 0 disables caching.
    max_entries:
        Entries kept before the oldest are evicted. Default 1024.
    """

    ttl_seconds: int = 600
    max_entries: int = 1024


# ---------------------------------------------------------------------------
# Keys and entries
# ---------------------------------------------------------------------------


def prediction_key(
    current_price: int,
    lower_bound: int,
    upper_bound: int,
    horizon_seconds: int,
) -> str:
    """Deterministic hex key for a prediction request."""
    canonical = "|".join(
        str(part) for part in (current_price, lower_bound, upper_bound, horizon_seconds)
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass
class CacheEntry:
    key: str
    result: "PredictionResult"
    created_at: int
    hit_count: int = 0

    def is_expired(self, now: int, ttl: int) -> bool:
        return now - self.created_at >= ttl


@dataclass(frozen=True)
class CacheStats:
    entries: int
    hits: int
    misses: int
    evictions: int


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class PredictionCache:
    """In-memory result cache, one lock per instance."""

    def __init__(self, config: PredictionCacheConfig | None = None) -> None:
        self._config = config or PredictionCacheConfig()
        self._validate(self._config.ttl_seconds, self._config.max_entries)
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def config(self) -> PredictionCacheConfig:
        return self._config

    @property
    def ttl_seconds(self) -> int:
        return self._config.ttl_seconds

    def get(self, key: str, now: int | None = None) -> Optional["PredictionResult"]:
        """Cached result, or None when missing or expired."""
        ts = now if now is not None else int(time.time())
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(ts, self._config.ttl_seconds):
                del self._entries[key]
                self._misses += 1
                LOGGER.debug("PredictionCache: expired %s", key[:12])
                return None
            entry.hit_count += 1
            self._hits += 1
            LOGGER.debug("PredictionCache: hit %s (%d hits)", key[:12], entry.hit_count)
            return entry.result

    def store(self, key: str, result: "PredictionResult", now: int | None = None) -> None:
        ts = now if now is not None else int(time.time())
        with self._lock:
            if self._config.ttl_seconds == 0:
                return
            self._entries[key] = CacheEntry(key=key, result=result, created_at=ts)
            if len(self._entries) > self._config.max_entries:
                self._evict(ts)

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def set_ttl(self, ttl_seconds: int) -> None:
        """Change the TTL; existing entries are judged against the new value."""
        self._validate(ttl_seconds, self._config.max_entries)
        with self._lock:
            self._config = PredictionCacheConfig(
                ttl_seconds=ttl_seconds,
                max_entries=self._config.max_entries,
            )
            if ttl_seconds == 0:
                self._entries.clear()
        LOGGER.info("PredictionCache: ttl now %ds", ttl_seconds)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                entries=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict(self, now: int) -> None:
        """Drop expired entries, then the oldest until under max_entries."""
        ttl = self._config.ttl_seconds
        expired = [k for k, v in self._entries.items() if v.is_expired(now, ttl)]
        for k in expired:
            del self._entries[k]
        evicted = len(expired)

        if len(self._entries) > self._config.max_entries:
            oldest = sorted(self._entries, key=lambda k: self._entries[k].created_at)
            excess = len(self._entries) - self._config.max_entries
            for k in oldest[:excess]:
                del self._entries[k]
            evicted += excess
        self._evictions += evicted

    @staticmethod
    def _validate(ttl_seconds: int, max_entries: int) -> None:
        if ttl_seconds < 0:
            raise InvalidInput(InvalidInputReason.INVALID_SETTING, f"cache ttl {ttl_seconds}s")
        if max_entries <= 0:
            raise InvalidInput(
                InvalidInputReason.INVALID_SETTING, f"cache max_entries {max_entries}"
            )
