"""Redis client and the short-lived settings cache used by the evaluate path."""

from typing import Optional

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from guanzhao.config import get_settings
from guanzhao.models.engagement import UserEngagementSettings

logger = structlog.get_logger(__name__)

# Global Redis client
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create the Redis client.

    Returns:
        Redis client or None if connection fails (graceful degradation)
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()

    try:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        await _redis_client.ping()
        logger.info("redis_connected", url=settings.redis_url.split("@")[-1])
        return _redis_client
    except Exception as e:
        logger.warning("redis_connection_failed", error=str(e))
        _redis_client = None
        return None


async def close_redis() -> None:
    """Close the Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.close()
        _redis_client = None
        logger.info("redis_connection_closed")


class SettingsCache:
    """Caches engagement settings for the read-only evaluate path.

    Entries expire after ``settings_cache_ttl`` seconds and are deleted on
    every settings write. A slightly stale read can only yield a false
    "allowed", which the budget check at commit time still catches.
    """

    def __init__(self):
        self.settings = get_settings()

    @staticmethod
    def _key(user_id: str) -> str:
        return f"guanzhao:settings:{user_id}"

    async def get(self, user_id: str) -> Optional[UserEngagementSettings]:
        client = await get_redis()
        if client is None:
            return None

        try:
            data = await client.get(self._key(user_id))
            if data is None:
                return None
            return UserEngagementSettings.model_validate_json(data)
        except ValidationError:
            logger.warning("settings_cache_corrupt", user_id=user_id)
            return None
        except Exception as e:
            logger.warning("settings_cache_get_failed", error=str(e), user_id=user_id)
            return None

    async def set(self, settings: UserEngagementSettings) -> bool:
        client = await get_redis()
        if client is None:
            return False

        try:
            await client.setex(
                self._key(str(settings.user_id)),
                self.settings.settings_cache_ttl,
                settings.model_dump_json(),
            )
            return True
        except Exception as e:
            logger.warning("settings_cache_set_failed", error=str(e), user_id=str(settings.user_id))
            return False

    async def invalidate(self, user_id: str) -> None:
        client = await get_redis()
        if client is None:
            return

        try:
            await client.delete(self._key(user_id))
        except Exception as e:
            logger.warning("settings_cache_invalidate_failed", error=str(e), user_id=user_id)
