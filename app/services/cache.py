"""
Redis Cache Service
===================

Short-lived cache in front of the entitlement read path.

Only record snapshots are cached, under ``cache:entitlement:{user_id}``.
The reconciler invalidates the key after every commit that changed a
record, so the TTL only bounds staleness for writes made outside this
service. Every operation is best-effort: a Redis outage degrades to a
cache miss, never to a failed request.

Invalidation bumps a per-user version before deleting the snapshot. A
reader notes the version before querying Postgres and stores its snapshot
only if the version is unchanged, so a read that raced a commit cannot
put the pre-commit state back.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[Redis] = None

# KEYS: version, snapshot. ARGV: expected version, ttl, payload
_SET_IF_VERSION = """
if (redis.call('GET', KEYS[1]) or '0') == ARGV[1] then
    redis.call('SET', KEYS[2], ARGV[3], 'EX', ARGV[2])
    return 1
end
return 0
"""


async def init_redis() -> Redis:
    """Create the shared client and ping it once so startup logs a bad REDIS_URL."""
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            max_connections=20,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )
        await _redis_client.ping()
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Redis:
    return _redis_client if _redis_client is not None else await init_redis()


async def close_redis() -> None:
    global _redis_client

    if _redis_client is None:
        return
    await _redis_client.aclose()
    _redis_client = None
    logger.info("Redis connection closed")


class CacheManager:
    """JSON values with a TTL. Failures are logged and reported as misses."""

    TTL_SHORT = 60
    TTL_VERSION = 86400

    @staticmethod
    async def get(key: str) -> Optional[Any]:
        try:
            raw = await (await get_redis()).get(key)
            return None if raw is None else json.loads(raw)
        except (RedisError, OSError, ValueError) as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            return None

    @staticmethod
    async def delete(key: str) -> bool:
        """True when a key was actually removed."""
        try:
            return bool(await (await get_redis()).delete(key))
        except (RedisError, OSError) as e:
            # A stale snapshot now lives until its TTL
            logger.warning("Cache delete failed for %s: %s", key, e)
            return False

    @staticmethod
    async def get_version(version_key: str) -> Optional[str]:
        """Current version, ``"0"`` if never bumped, None if Redis failed."""
        try:
            raw = await (await get_redis()).get(version_key)
        except (RedisError, OSError) as e:
            logger.warning("Cache version read failed for %s: %s", version_key, e)
            return None
        return "0" if raw is None else str(raw)

    @staticmethod
    async def bump_version(version_key: str, ttl: int = TTL_VERSION) -> bool:
        try:
            client = await get_redis()
            await client.incr(version_key)
            await client.expire(version_key, ttl)
        except (RedisError, OSError) as e:
            logger.warning("Cache version bump failed for %s: %s", version_key, e)
            return False
        return True

    @staticmethod
    async def set_if_version(
        key: str,
        value: Any,
        version_key: str,
        version: str,
        ttl: int = TTL_SHORT,
    ) -> bool:
        """Store ``value`` only while ``version_key`` still reads ``version``."""
        try:
            stored = await (await get_redis()).eval(
                _SET_IF_VERSION,
                2,
                version_key,
                key,
                version,
                ttl,
                json.dumps(value, default=str),
            )
        except (RedisError, OSError, TypeError) as e:
            logger.warning("Cache write failed for %s: %s", key, e)
            return False
        if not stored:
            logger.debug("Cache write for %s dropped, invalidated during read", key)
        return bool(stored)


class CacheKeys:
    @staticmethod
    def entitlement(user_id: str) -> str:
        return f"cache:entitlement:{user_id}"

    @staticmethod
    def entitlement_version(user_id: str) -> str:
        return f"cache:entitlement:{user_id}:version"


class CacheInvalidator:
    """Cache entries to drop when billing state changes."""

    @staticmethod
    async def on_subscription_change(user_id: str) -> None:
        await CacheManager.bump_version(CacheKeys.entitlement_version(user_id))
        await CacheManager.delete(CacheKeys.entitlement(user_id))
