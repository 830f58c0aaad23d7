"""Small cache for query embeddings, in memory or in Redis."""

import asyncio
import json
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "clipsage:"


class ClipCache:
    """Cache facade. Backend errors are logged and treated as misses."""

    def __init__(self, url: Optional[str] = None, max_size: int = 2048):
        if url:
            self.backend = RedisCache(url)
        else:
            self.backend = MemoryCache(max_size=max_size)

    async def get(self, key: str) -> Optional[Any]:
        try:
            return await self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cache get error: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600):
        try:
            await self.backend.set(key, value, ttl)
        except Exception as e:
            logger.warning(f"Cache set error: {e}")

    async def delete(self, key: str):
        try:
            await self.backend.delete(key)
        except Exception as e:
            logger.warning(f"Cache delete error: {e}")

    async def clear(self):
        try:
            await self.backend.clear()
        except Exception as e:
            logger.warning(f"Cache clear error: {e}")

    async def close(self):
        await self.backend.close()


class RedisCache:
    """Redis-backed cache, values stored as JSON."""

    def __init__(self, url: str):
        self.redis = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )

    async def get(self, key: str) -> Optional[Any]:
        value = await self.redis.get(KEY_PREFIX + key)
        return json.loads(value) if value else None

    async def set(self, key: str, value: Any, ttl: int = 3600):
        await self.redis.setex(KEY_PREFIX + key, ttl, json.dumps(value))

    async def delete(self, key: str):
        await self.redis.delete(KEY_PREFIX + key)

    async def clear(self):
        keys = [key async for key in self.redis.scan_iter(match=KEY_PREFIX + "*")]
        if keys:
            await self.redis.delete(*keys)

    async def close(self):
        await self.redis.aclose()


class MemoryCache:
    """In-memory cache with TTL and LRU eviction."""

    def __init__(self, max_size: int = 2048):
        self.max_size = max_size
        self._entries: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            expires_at, value = entry
            if time.monotonic() > expires_at:
                del self._entries[key]
                return None

            self._entries.move_to_end(key)
            return value

    async def set(self, key: str, value: Any, ttl: int = 3600):
        async with self._lock:
            self._entries[key] = (time.monotonic() + ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    async def delete(self, key: str):
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self):
        async with self._lock:
            self._entries.clear()

    async def close(self):
        return None

    def get_stats(self) -> Dict[str, Any]:
        now = time.monotonic()
        expired = sum(1 for expires_at, _ in self._entries.values() if now > expires_at)
        return {
            "total_entries": len(self._entries),
            "expired_entries": expired,
            "max_size": self.max_size,
            "usage_percent": round(len(self._entries) / self.max_size * 100, 1),
        }
