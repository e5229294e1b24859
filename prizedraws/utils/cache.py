"""
In-memory TTL cache for the public draw display endpoints.

Keys are grouped into families by prefix ("major_draw", "mini_draw"). Credits
and status transitions invalidate a whole family; a value computed while its
family was invalidated is returned to the caller but not stored.
"""

import time
import logging
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar
from collections import defaultdict
from functools import wraps

from prizedraws.config import settings

T = TypeVar('T')

MAJOR_DRAW_PREFIX = "major_draw"
MINI_DRAW_PREFIX = "mini_draw"


class Cache:
    """
    TTL cache keyed by strings. The TTL of a key comes from settings.CACHE_TTL
    for its family, falling back to default_ttl.
    """

    def __init__(self, default_ttl: int = 30):
        self.default_ttl = default_ttl
        self.entries: Dict[str, Tuple[Any, float]] = {}
        self.generations: Dict[str, int] = defaultdict(int)
        self.locks = defaultdict(asyncio.Lock)
        self.ttl_settings = getattr(settings, 'CACHE_TTL', {})

    @staticmethod
    def family(key: str) -> str:
        return key.split(":", 1)[0]

    def ttl_for(self, key: str) -> int:
        return self.ttl_settings.get(self.family(key), self.default_ttl)

    async def get(self, key: str) -> Optional[Any]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            self.entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.ttl_for(key) if ttl is None else ttl
        self.entries[key] = (value, time.monotonic() + ttl)

    async def invalidate(self, family: str) -> int:
        """
        Drops every key of a family and bumps its generation.

        Returns:
            int: Number of removed keys
        """
        self.generations[family] += 1
        stale = [key for key in self.entries if self.family(key) == family]
        for key in stale:
            del self.entries[key]
        if stale:
            logging.debug(f"Invalidated {len(stale)} cached '{family}' entries")
        return len(stale)

    async def clear(self) -> None:
        self.entries.clear()
        self.generations.clear()

    async def purge_expired(self) -> int:
        now = time.monotonic()
        expired = [key for key, (_, expires_at) in self.entries.items() if now >= expires_at]
        for key in expired:
            del self.entries[key]
        return len(expired)

    async def get_or_compute(self, key: str, compute_func: Callable[[], Awaitable[T]], ttl: Optional[int] = None) -> T:
        """
        Returns the cached value or computes it under a per-key lock.
        """
        value = await self.get(key)
        if value is not None:
            return value

        async with self.locks[key]:
            value = await self.get(key)
            if value is not None:
                return value

            family = self.family(key)
            generation = self.generations[family]
            value = await compute_func()
            if value is not None and self.generations[family] == generation:
                await self.set(key, value, ttl)
            return value


cache = Cache(default_ttl=30)


def cached(ttl: Optional[int] = None, key_prefix: str = None):
    """
    Caches the result of an async function.

    Arguments that render as "<...>" (sessions and other objects) are left out of the key.

    Args:
        ttl (Optional[int]): TTL in seconds, defaults to the family TTL
        key_prefix (str): Key prefix; its first segment is the invalidation family
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            key_parts = [key_prefix or func.__name__]
            key_parts.extend(str(arg) for arg in args if not (str(arg).startswith("<") and str(arg).endswith(">")))
            key_parts.extend(f"{k}={v}" for k, v in sorted(kwargs.items()))
            return await cache.get_or_compute(":".join(key_parts), lambda: func(*args, **kwargs), ttl)
        return wrapper
    return decorator


async def invalidate_draw_cache(kind: str = None) -> None:
    """Drops cached display data for major draws, mini draws, or both (kind=None)."""
    if kind in (None, "major"):
        await cache.invalidate(MAJOR_DRAW_PREFIX)
    if kind in (None, "mini"):
        await cache.invalidate(MINI_DRAW_PREFIX)


async def start_cache_cleanup_task(interval: int = 60):
    """
    Periodically removes expired cache entries until cancelled.
    """
    logging.info("Cache cleanup task started")
    try:
        while True:
            await asyncio.sleep(interval)
            removed = await cache.purge_expired()
            if removed:
                logging.debug(f"Removed {removed} expired cache entries")
    except asyncio.CancelledError:
        logging.info("Cache cleanup task cancelled")
