"""Engagement settings: reads, partial updates, snooze and frequency de-escalation."""

from datetime import datetime
from typing import Optional
from uuid import UUID

import asyncpg
import structlog

from guanzhao.database import get_pool
from guanzhao.models.engagement import (
    DEFAULT_FREQUENCY_LEVEL,
    DEFAULT_QUIET_HOURS_END,
    DEFAULT_QUIET_HOURS_START,
    DEFAULT_STYLE,
    DEFAULT_TIMEZONE,
    FrequencyLevel,
    SettingsUpdate,
    UserEngagementSettings,
    next_lower_level,
)
from guanzhao.services.budget_service import BudgetService
from guanzhao.services.redis_service import SettingsCache
from guanzhao.services.time_window import utcnow

logger = structlog.get_logger(__name__)

SETTINGS_COLUMNS = """
    user_id, enabled, frequency_level, style, push_enabled,
    quiet_hours_start, quiet_hours_end, timezone, snoozed_until,
    created_at, updated_at
"""

# Fields SettingsUpdate may write, in column order.
MUTABLE_FIELDS = (
    "enabled",
    "frequency_level",
    "style",
    "push_enabled",
    "quiet_hours_start",
    "quiet_hours_end",
    "timezone",
    "snoozed_until",
)


def _settings_from_row(row) -> UserEngagementSettings:
    return UserEngagementSettings(**dict(row))


def _column_value(value):
    if isinstance(value, FrequencyLevel):
        return value.value
    return value


class SettingsService:
    """Reads and writes ``guanzhao_settings``.

    The user-facing settings surface writes the same row; the last write wins.
    """

    def __init__(self):
        self.cache = SettingsCache()
        self.budgets = BudgetService()

    async def get_settings(self, user_id: str) -> Optional[UserEngagementSettings]:
        """Return the stored settings, or None if never provisioned."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {SETTINGS_COLUMNS} FROM guanzhao_settings WHERE user_id = $1",
                UUID(user_id),
            )

        if row is None:
            return None
        return _settings_from_row(row)

    async def get_effective_settings(self, user_id: str) -> UserEngagementSettings:
        """Stored settings, or the system defaults when none exist (no write)."""
        settings = await self.get_settings(user_id)
        if settings is None:
            return UserEngagementSettings.defaults(UUID(user_id))
        return settings

    async def get_cached_settings(self, user_id: str) -> Optional[UserEngagementSettings]:
        """Settings for the evaluate path; may be up to one cache TTL stale."""
        cached = await self.cache.get(user_id)
        if cached is not None:
            return cached

        settings = await self.get_settings(user_id)
        if settings is not None:
            await self.cache.set(settings)
        return settings

    async def ensure_settings(
        self, user_id: str, timezone: Optional[str] = None
    ) -> UserEngagementSettings:
        """Provision default settings if the user has none yet.

        ``timezone`` only applies to a newly created record; an existing
        record keeps its own.
        """
        now = utcnow()
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO guanzhao_settings (user_id, timezone, created_at, updated_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (user_id) DO UPDATE SET user_id = EXCLUDED.user_id
                RETURNING {SETTINGS_COLUMNS}
                """,
                UUID(user_id),
                timezone or DEFAULT_TIMEZONE,
                now,
                now,
            )

        return _settings_from_row(row)

    async def update_settings(
        self, user_id: str, update: SettingsUpdate
    ) -> UserEngagementSettings:
        """Apply a partial update, creating the record if needed.

        A change of ``frequency_level`` also rewrites the budget limits to the
        new level's defaults within the same transaction.
        """
        changes = update.changes()
        if not changes:
            return await self.get_effective_settings(user_id)

        now = utcnow()
        uid = UUID(user_id)
        fields = [field for field in MUTABLE_FIELDS if field in changes]

        columns = ", ".join(fields)
        placeholders = ", ".join(f"${idx}" for idx in range(4, 4 + len(fields)))
        assignments = ", ".join(f"{field} = EXCLUDED.{field}" for field in fields)
        values = [_column_value(changes[field]) for field in fields]

        pool = await get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO guanzhao_settings (user_id, created_at, updated_at, {columns})
                    VALUES ($1, $2, $3, {placeholders})
                    ON CONFLICT (user_id) DO UPDATE SET
                        {assignments},
                        updated_at = EXCLUDED.updated_at
                    RETURNING {SETTINGS_COLUMNS}
                    """,
                    uid,
                    now,
                    now,
                    *values,
                )

                if "frequency_level" in changes and changes["frequency_level"] is not None:
                    await self.budgets.apply_level_limits(
                        conn, uid, changes["frequency_level"], now
                    )

        await self.cache.invalidate(user_id)
        logger.info("guanzhao_settings_updated", user_id=user_id, fields=fields)

        return _settings_from_row(row)

    async def snooze(self, user_id: str, until: datetime) -> UserEngagementSettings:
        settings = await self.update_settings(user_id, SettingsUpdate(snoozed_until=until))
        logger.info("guanzhao_snoozed", user_id=user_id, snoozed_until=until.isoformat())
        return settings

    async def disable(self, user_id: str) -> UserEngagementSettings:
        return await self.update_settings(user_id, SettingsUpdate(enabled=False))

    async def downgrade_to_minimal(self, user_id: str) -> UserEngagementSettings:
        """Silent frequency and push switched off; in-app stays enabled."""
        return await self.update_settings(
            user_id,
            SettingsUpdate(frequency_level=FrequencyLevel.SILENT, push_enabled=False),
        )

    async def escalate_down(
        self, user_id: str, conn: Optional[asyncpg.Connection] = None
    ) -> UserEngagementSettings:
        """Move one step down the frequency ladder (no-op at ``silent``).

        The read and the write happen under a row lock so two concurrent
        "too frequent" reports move the user two steps, not one. Pass ``conn``
        to step down inside an existing transaction.
        """
        now = utcnow()
        uid = UUID(user_id)

        if conn is not None:
            previous, row = await self._step_down(conn, uid, now)
        else:
            pool = await get_pool()
            async with pool.acquire() as acquired:
                async with acquired.transaction():
                    previous, row = await self._step_down(acquired, uid, now)

        settings = _settings_from_row(row)
        if settings.frequency_level == previous:
            return settings

        await self.cache.invalidate(user_id)
        logger.info(
            "frequency_level_downgraded",
            user_id=user_id,
            previous_level=previous.value,
            new_level=settings.frequency_level.value,
        )

        return settings

    async def _step_down(self, conn: asyncpg.Connection, uid: UUID, now: datetime):
        """Returns the level before the step and the resulting row."""
        await conn.execute(
            """
            INSERT INTO guanzhao_settings (user_id, created_at, updated_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (user_id) DO NOTHING
            """,
            uid,
            now,
            now,
        )
        row = await conn.fetchrow(
            f"SELECT {SETTINGS_COLUMNS} FROM guanzhao_settings WHERE user_id = $1 FOR UPDATE",
            uid,
        )
        current = _settings_from_row(row)
        new_level = next_lower_level(current.frequency_level)

        if new_level == current.frequency_level:
            return current.frequency_level, row

        row = await conn.fetchrow(
            f"""
            UPDATE guanzhao_settings
            SET frequency_level = $2, updated_at = $3
            WHERE user_id = $1
            RETURNING {SETTINGS_COLUMNS}
            """,
            uid,
            new_level.value,
            now,
        )
        await self.budgets.apply_level_limits(conn, uid, new_level, now)
        return current.frequency_level, row

    async def reset(self, user_id: str) -> UserEngagementSettings:
        """Restore default settings and zero every budget counter.

        The user's timezone is kept.
        """
        now = utcnow()
        uid = UUID(user_id)
        pool = await get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO guanzhao_settings (
                        user_id, enabled, frequency_level, style, push_enabled,
                        quiet_hours_start, quiet_hours_end, timezone, snoozed_until,
                        created_at, updated_at
                    )
                    VALUES ($1, TRUE, $2, $3, FALSE, $4, $5, $6, NULL, $7, $7)
                    ON CONFLICT (user_id) DO UPDATE SET
                        enabled = EXCLUDED.enabled,
                        frequency_level = EXCLUDED.frequency_level,
                        style = EXCLUDED.style,
                        push_enabled = EXCLUDED.push_enabled,
                        quiet_hours_start = EXCLUDED.quiet_hours_start,
                        quiet_hours_end = EXCLUDED.quiet_hours_end,
                        snoozed_until = NULL,
                        updated_at = EXCLUDED.updated_at
                    RETURNING {SETTINGS_COLUMNS}
                    """,
                    uid,
                    DEFAULT_FREQUENCY_LEVEL.value,
                    DEFAULT_STYLE,
                    DEFAULT_QUIET_HOURS_START,
                    DEFAULT_QUIET_HOURS_END,
                    DEFAULT_TIMEZONE,
                    now,
                )
                await self.budgets.apply_level_limits(conn, uid, DEFAULT_FREQUENCY_LEVEL, now)
                await self.budgets.reset(user_id, now=now, conn=conn)

        await self.cache.invalidate(user_id)
        logger.info("guanzhao_settings_reset", user_id=user_id)

        return _settings_from_row(row)
