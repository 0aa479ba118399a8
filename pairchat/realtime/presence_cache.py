import logging

import redis.asyncio as redis

from pairchat.core.config import settings


logger = logging.getLogger(__name__)


class NoopPresenceCache:

    enabled = False

    async def set_online(self, user_id: str, ttl_seconds: int = 60) -> None:
        return

    async def set_offline(self, user_id: str) -> None:
        return

    async def is_online(self, user_id: str) -> bool:
        return False

    async def close(self) -> None:
        return


class RedisPresenceCache:
    """Mirrors online users into Redis keys that expire unless refreshed."""

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    @staticmethod
    def _key(user_id: str) -> str:
        return f"presence:{user_id}"

    async def set_online(self, user_id: str, ttl_seconds: int = 60) -> None:
        await self._redis.set(self._key(user_id), "online", ex=ttl_seconds)

    async def set_offline(self, user_id: str) -> None:
        await self._redis.delete(self._key(user_id))

    async def is_online(self, user_id: str) -> bool:
        ttl = await self._redis.ttl(self._key(user_id))
        return bool(ttl and ttl > 0)

    async def close(self) -> None:
        await self._redis.aclose()


_cache = None


def get_presence_cache():
    global _cache
    if _cache is not None:
        return _cache
    if not settings.REDIS_URL:
        _cache = NoopPresenceCache()
    else:
        _cache = RedisPresenceCache(settings.REDIS_URL)
        logger.info("Mirroring presence into Redis")
    return _cache


async def close_presence_cache() -> None:
    global _cache
    if _cache is not None:
        await _cache.close()
    _cache = None
