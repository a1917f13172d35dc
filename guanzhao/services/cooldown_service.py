"""Per (user, trigger, channel) cooldown store."""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import asyncpg
import structlog

from guanzhao.database import get_pool
from guanzhao.models.engagement import Channel
from guanzhao.services.time_window import utcnow

logger = structlog.get_logger(__name__)


class CooldownService:
    """Stores "available again at" instants.

    Expired rows are left in place; they are inert and get overwritten the
    next time the same trigger fires on the same channel.
    """

    async def get_cooldown_until(
        self,
        user_id: str,
        trigger_id: str,
        channel: Channel,
        now: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Return the cooldown expiry if one is still in effect, else None."""
        now = now or utcnow()
        pool = await get_pool()

        async with pool.acquire() as conn:
            until = await conn.fetchval(
                """
                SELECT cooldown_until FROM guanzhao_cooldowns
                WHERE user_id = $1 AND trigger_id = $2 AND channel = $3
                """,
                UUID(user_id),
                trigger_id,
                channel.value,
            )

        if until is None or until <= now:
            return None
        return until

    async def is_on_cooldown(
        self,
        user_id: str,
        trigger_id: str,
        channel: Channel,
        now: Optional[datetime] = None,
    ) -> bool:
        """Boolean form of ``get_cooldown_until`` for callers that do not need the expiry."""
        return await self.get_cooldown_until(user_id, trigger_id, channel, now) is not None

    async def set_cooldown(
        self,
        user_id: str,
        trigger_id: str,
        channel: Channel,
        duration_days: float,
        now: Optional[datetime] = None,
        conn: Optional[asyncpg.Connection] = None,
    ) -> datetime:
        """Upsert the cooldown to ``now + duration_days``.

        Pass ``conn`` to write inside an existing transaction.
        """
        now = now or utcnow()
        until = now + timedelta(days=duration_days)
        sql = """
            INSERT INTO guanzhao_cooldowns (user_id, trigger_id, channel, cooldown_until)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id, trigger_id, channel) DO UPDATE SET
                cooldown_until = EXCLUDED.cooldown_until
        """
        args = (UUID(user_id), trigger_id, channel.value, until)

        if conn is not None:
            await conn.execute(sql, *args)
        else:
            pool = await get_pool()
            async with pool.acquire() as acquired:
                await acquired.execute(sql, *args)

        logger.info(
            "cooldown_set",
            user_id=user_id,
            trigger_id=trigger_id,
            channel=channel.value,
            cooldown_until=until.isoformat(),
        )
        return until

    async def clear_cooldown(self, user_id: str, trigger_id: str, channel: Channel) -> bool:
        """Remove a cooldown. Returns True if a record existed."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM guanzhao_cooldowns
                WHERE user_id = $1 AND trigger_id = $2 AND channel = $3
                """,
                UUID(user_id),
                trigger_id,
                channel.value,
            )

        cleared = result == "DELETE 1"
        if cleared:
            logger.info(
                "cooldown_cleared",
                user_id=user_id,
                trigger_id=trigger_id,
                channel=channel.value,
            )
        return cleared
