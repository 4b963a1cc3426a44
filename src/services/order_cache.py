"""In-memory TTL cache for order reads.

Payment-status polling hits the same order repeatedly while a payment is in
flight. Reads are served from here; every successful order write
invalidates the entry before returning to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.models.order import Order

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A cached order with expiration."""

    value: "Order"
    expires_at: float

    def is_expired(self) -> bool:
        return time.time() > self.expires_at


@dataclass
class OrderCacheConfig:
    """Configuration for order caching."""

    max_size: int = 1000
    ttl_seconds: int = 30
    cleanup_interval_seconds: int = 300

    @classmethod
    def from_settings(cls) -> "OrderCacheConfig":
        """Create config from application settings."""
        from src.core.config import get_settings

        settings = get_settings()
        return cls(
            max_size=settings.order_cache_size,
            ttl_seconds=settings.order_cache_ttl,
        )


class OrderCache:
    """Thread-safe in-memory order cache keyed by order id."""

    def __init__(self, config: OrderCacheConfig | None = None) -> None:
        self.config = config or OrderCacheConfig()
        self._cache: dict[str, CacheEntry] = {}
        self._lock = Lock()
        self._cleanup_task: asyncio.Task | None = None

    async def start_cleanup_task(self) -> None:
        """Start background cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Order cache cleanup task started")

    async def stop_cleanup_task(self) -> None:
        """Stop background cleanup task."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info("Order cache cleanup task stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            count = self.cleanup()
            if count > 0:
                logger.debug("Order cache cleaned up %d expired entries", count)

    def get(self, order_id: str) -> "Order | None":
        """Return a copy of the cached order, or None if missing/expired."""
        key = str(order_id)
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if entry.is_expired():
                del self._cache[key]
                return None
            # Callers may mutate what they get back
            return entry.value.model_copy(deep=True)

    def set(self, order: "Order") -> None:
        key = str(order.id)
        expires_at = time.time() + self.config.ttl_seconds
        with self._lock:
            if key not in self._cache and len(self._cache) >= self.config.max_size:
                self._evict_oldest()
            self._cache[key] = CacheEntry(value=order.model_copy(deep=True), expires_at=expires_at)

    def invalidate(self, order_id: str) -> bool:
        """Drop the entry for ``order_id``. Returns True if one existed."""
        with self._lock:
            existed = self._cache.pop(str(order_id), None) is not None
        if existed:
            logger.debug("Invalidated cached order %s", order_id)
        return existed

    def _evict_oldest(self) -> None:
        """Evict entries to make room. Must be called with lock held."""
        expired_keys = [k for k, v in self._cache.items() if v.is_expired()]
        for key in expired_keys:
            del self._cache[key]

        if len(self._cache) >= self.config.max_size:
            sorted_entries = sorted(self._cache.items(), key=lambda x: x[1].expires_at)
            to_remove = max(1, len(self._cache) // 10)
            for key, _ in sorted_entries[:to_remove]:
                del self._cache[key]
            logger.debug("Evicted %d entries from order cache", to_remove)

    def cleanup(self) -> int:
        """Remove all expired entries and return how many were removed."""
        with self._lock:
            expired_keys = [k for k, v in self._cache.items() if v.is_expired()]
            for key in expired_keys:
                del self._cache[key]
            return len(expired_keys)

    def clear(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count

    def get_stats(self) -> dict:
        with self._lock:
            valid_count = sum(1 for v in self._cache.values() if not v.is_expired())
            return {
                "total_entries": len(self._cache),
                "valid_entries": valid_count,
                "max_size": self.config.max_size,
                "ttl_seconds": self.config.ttl_seconds,
            }


_order_cache: OrderCache | None = None


def get_order_cache() -> OrderCache:
    """Get or create the global order cache instance."""
    global _order_cache
    if _order_cache is None:
        _order_cache = OrderCache(OrderCacheConfig.from_settings())
    return _order_cache


async def init_order_cache() -> OrderCache:
    """Initialize order cache with cleanup task. Call at app startup."""
    cache = get_order_cache()
    await cache.start_cleanup_task()
    return cache


async def shutdown_order_cache() -> None:
    """Shutdown order cache cleanup task. Call at app shutdown."""
    global _order_cache
    if _order_cache:
        await _order_cache.stop_cleanup_task()
