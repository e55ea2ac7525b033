"""
Bounded in-memory cache for proxied artifacts.

Entries expire by age and the cache is trimmed to capacity by a periodic
sweep. There is no single-flight guarantee: concurrent misses for the same
key each run their producer.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

CACHE_MAX_SIZE = 2000
CACHE_EXPIRY = 2 * 60 * 60  # seconds
SWEEP_INTERVAL = 30 * 60


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    timestamp: float
    ttl: Optional[float] = None


class SegmentCache:

    def __init__(self, max_size=CACHE_MAX_SIZE, expiry=CACHE_EXPIRY,
                 sweep_interval=SWEEP_INTERVAL, enabled=True, clock=time.time):
        self.max_size = max_size
        self.expiry = expiry
        self.sweep_interval = sweep_interval
        self.enabled = enabled
        self.clock = clock
        self._entries = {}
        self._sweeper = None

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return key in self._entries

    def _lifetime(self, entry):
        if entry.ttl is None:
            return self.expiry
        return min(entry.ttl, self.expiry)

    def _is_fresh(self, entry, now):
        return now - entry.timestamp <= self._lifetime(entry)

    def get(self, key, default=None):
        entry = self._entries.get(key)
        if entry is None or not self._is_fresh(entry, self.clock()):
            return default
        return entry.value

    def set(self, key, value, ttl=None):
        self._entries[key] = CacheEntry(key, value, self.clock(), ttl)

    def delete(self, key):
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()

    async def fetch(self, key, producer, ttl=None):
        """
        Return the fresh value cached under `key`, otherwise await `producer()`
        and cache its result. A disabled cache always calls the producer.
        """
        if not self.enabled:
            return await producer()

        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry, self.clock()):
            logger.debug(f"cache hit for {key}")
            return entry.value

        logger.debug(f"cache miss for {key}")
        value = await producer()
        self.set(key, value, ttl)
        return value

    def sweep(self):
        """Drop expired entries, then the oldest ones while over capacity. Returns the new size."""
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if not self._is_fresh(entry, now)]
        for key in expired:
            del self._entries[key]

        overflow = len(self._entries) - self.max_size
        evicted = 0
        if overflow > 0:
            oldest = sorted(self._entries.values(), key=lambda entry: entry.timestamp)[:overflow]
            for entry in oldest:
                del self._entries[entry.key]
            evicted = len(oldest)

        if expired or evicted:
            logger.info(f"cache sweep removed {len(expired)} expired and {evicted} overflow entries, {len(self._entries)} left")
        return len(self._entries)

    async def _sweep_forever(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("cache sweep failed")

    def start(self):
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())
        return self._sweeper

    async def stop(self):
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
