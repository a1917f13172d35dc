"""Per-user budget ledger with lazy day/week reset and atomic consume."""

from datetime import datetime
from typing import Optional
from uuid import UUID

import asyncpg
import structlog

from guanzhao.config import get_settings
from guanzhao.database import get_pool
from guanzhao.models.engagement import (
    DEFAULT_FREQUENCY_LEVEL,
    FREQUENCY_BUDGETS,
    BudgetLimits,
    BudgetRemaining,
    BudgetScope,
    BudgetState,
    Channel,
    ConsumeResult,
    FrequencyLevel,
)
from guanzhao.services.time_window import is_new_day, is_new_week, utcnow

logger = structlog.get_logger(__name__)

BUDGET_COLUMNS = """
    b.user_id, b.budget_in_app_day, b.budget_in_app_week, b.budget_push_day, b.budget_push_week,
    b.used_in_app_day, b.used_in_app_week, b.used_push_day, b.used_push_week, b.last_updated_at
"""


def limits_for_level(level: FrequencyLevel) -> BudgetLimits:
    return FREQUENCY_BUDGETS[level]


def reconcile_budget(state: BudgetState, now: datetime, tz: str) -> BudgetState:
    """Zero the daily and/or weekly counters if ``now`` is in a later period.

    This is the only place period resets are decided; both the read path and
    the consume path go through it. ``last_updated_at`` is left alone so a
    read that does not persist the result can be repeated safely.
    """
    updates = {}
    if is_new_day(state.last_updated_at, now, tz):
        updates["used_in_app_day"] = 0
        updates["used_push_day"] = 0
    if is_new_week(state.last_updated_at, now, tz):
        updates["used_in_app_week"] = 0
        updates["used_push_week"] = 0

    if not updates:
        return state
    return state.model_copy(update=updates)


def apply_consume(
    state: BudgetState,
    channel: Channel,
    amount: int,
    now: datetime,
    tz: str,
    scope: BudgetScope = BudgetScope.DAY,
) -> tuple[ConsumeResult, BudgetState]:
    """Consume ``amount`` from both the daily and weekly pool of ``channel``.

    Rejected (never clamped) when either pool would go over its limit; the
    returned state is then the reconciled state with no counter changed.
    ``scope`` only selects which counters ``used_after``/``limit_remaining``
    report.
    """
    current = reconcile_budget(state, now, tz)

    accepted = True
    updated = current
    if amount > 0:
        day_ok = current.used(channel, BudgetScope.DAY) + amount <= current.limit(channel, BudgetScope.DAY)
        week_ok = current.used(channel, BudgetScope.WEEK) + amount <= current.limit(channel, BudgetScope.WEEK)
        accepted = day_ok and week_ok
        if accepted:
            updated = current.model_copy(
                update={
                    f"used_{channel.value}_day": current.used(channel, BudgetScope.DAY) + amount,
                    f"used_{channel.value}_week": current.used(channel, BudgetScope.WEEK) + amount,
                    "last_updated_at": now,
                }
            )

    result = ConsumeResult(
        accepted=accepted,
        channel=channel,
        scope=scope,
        used_after=updated.used(channel, scope),
        limit_remaining=updated.remaining(channel, scope),
        remaining_day=updated.remaining(channel, BudgetScope.DAY),
        remaining_week=updated.remaining(channel, BudgetScope.WEEK),
    )
    return result, updated


def _state_from_row(row) -> BudgetState:
    return BudgetState(**{key: row[key] for key in BudgetState.model_fields})


class BudgetService:
    """Reads and mutates the ``guanzhao_budget`` ledger.

    Mutations lock the user's row for the duration of a transaction, which
    serializes concurrent consumes for the same user.
    """

    def __init__(self):
        self.settings = get_settings()

    async def lock_budget(
        self, conn: asyncpg.Connection, user_id: UUID, now: datetime
    ) -> tuple[BudgetState, str]:
        """Lock (creating if needed) the user's ledger row inside a transaction.

        Returns:
            Tuple of (stored state, user's timezone)
        """
        query = f"""
            SELECT {BUDGET_COLUMNS}, COALESCE(s.timezone, $2) AS timezone
            FROM guanzhao_budget b
            LEFT JOIN guanzhao_settings s ON s.user_id = b.user_id
            WHERE b.user_id = $1
            FOR UPDATE OF b
        """
        row = await conn.fetchrow(query, user_id, self.settings.default_timezone)

        if row is None:
            level_row = await conn.fetchrow(
                "SELECT frequency_level FROM guanzhao_settings WHERE user_id = $1",
                user_id,
            )
            level = (
                FrequencyLevel(level_row["frequency_level"])
                if level_row is not None
                else DEFAULT_FREQUENCY_LEVEL
            )
            await self._insert_fresh(conn, BudgetState.for_level(user_id, level, now))
            row = await conn.fetchrow(query, user_id, self.settings.default_timezone)

        return _state_from_row(row), row["timezone"]

    async def _insert_fresh(self, conn: asyncpg.Connection, state: BudgetState) -> None:
        await conn.execute(
            """
            INSERT INTO guanzhao_budget (
                user_id, budget_in_app_day, budget_in_app_week, budget_push_day, budget_push_week,
                used_in_app_day, used_in_app_week, used_push_day, used_push_week, last_updated_at
            )
            VALUES ($1, $2, $3, $4, $5, 0, 0, 0, 0, $6)
            ON CONFLICT (user_id) DO NOTHING
            """,
            state.user_id,
            state.budget_in_app_day,
            state.budget_in_app_week,
            state.budget_push_day,
            state.budget_push_week,
            state.last_updated_at,
        )

    async def save(self, conn: asyncpg.Connection, state: BudgetState) -> None:
        await conn.execute(
            """
            UPDATE guanzhao_budget
            SET used_in_app_day = $2, used_in_app_week = $3,
                used_push_day = $4, used_push_week = $5,
                last_updated_at = $6
            WHERE user_id = $1
            """,
            state.user_id,
            state.used_in_app_day,
            state.used_in_app_week,
            state.used_push_day,
            state.used_push_week,
            state.last_updated_at,
        )

    async def consume_locked(
        self,
        conn: asyncpg.Connection,
        user_id: UUID,
        channel: Channel,
        amount: int,
        now: datetime,
        scope: BudgetScope = BudgetScope.DAY,
    ) -> ConsumeResult:
        """Consume within a transaction the caller already opened."""
        state, tz = await self.lock_budget(conn, user_id, now)
        result, updated = apply_consume(state, channel, amount, now, tz, scope)

        if result.accepted and amount > 0:
            await self.save(conn, updated)

        return result

    async def consume(
        self,
        user_id: str,
        channel: Channel,
        amount: int,
        scope: BudgetScope = BudgetScope.DAY,
        now: Optional[datetime] = None,
    ) -> ConsumeResult:
        """Atomically consume budget or reject without changing anything."""
        now = now or utcnow()
        pool = await get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                result = await self.consume_locked(conn, UUID(user_id), channel, amount, now, scope)

        logger.info(
            "budget_consumed" if result.accepted else "budget_consume_rejected",
            user_id=user_id,
            channel=channel.value,
            amount=amount,
            remaining_day=result.remaining_day,
            remaining_week=result.remaining_week,
        )
        return result

    async def get_state(self, user_id: str, now: Optional[datetime] = None) -> BudgetState:
        """Return the ledger with the lazy reset applied in memory only."""
        now = now or utcnow()
        uid = UUID(user_id)
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {BUDGET_COLUMNS}, COALESCE(s.timezone, $2) AS timezone
                FROM guanzhao_budget b
                LEFT JOIN guanzhao_settings s ON s.user_id = b.user_id
                WHERE b.user_id = $1
                """,
                uid,
                self.settings.default_timezone,
            )
            if row is None:
                level = await conn.fetchval(
                    "SELECT frequency_level FROM guanzhao_settings WHERE user_id = $1",
                    uid,
                )
                return BudgetState.for_level(
                    uid, FrequencyLevel(level) if level else DEFAULT_FREQUENCY_LEVEL, now
                )

        return reconcile_budget(_state_from_row(row), now, row["timezone"])

    async def check_remaining(
        self, user_id: str, now: Optional[datetime] = None
    ) -> BudgetRemaining:
        state = await self.get_state(user_id, now)
        return BudgetRemaining.from_state(state)

    async def apply_level_limits(
        self,
        conn: asyncpg.Connection,
        user_id: UUID,
        level: FrequencyLevel,
        now: datetime,
    ) -> None:
        """Rewrite the user's limits to the defaults of ``level``; counters stay."""
        limits = limits_for_level(level)
        await conn.execute(
            """
            INSERT INTO guanzhao_budget (
                user_id, budget_in_app_day, budget_in_app_week, budget_push_day, budget_push_week,
                used_in_app_day, used_in_app_week, used_push_day, used_push_week, last_updated_at
            )
            VALUES ($1, $2, $3, $4, $5, 0, 0, 0, 0, $6)
            ON CONFLICT (user_id) DO UPDATE SET
                budget_in_app_day = EXCLUDED.budget_in_app_day,
                budget_in_app_week = EXCLUDED.budget_in_app_week,
                budget_push_day = EXCLUDED.budget_push_day,
                budget_push_week = EXCLUDED.budget_push_week
            """,
            user_id,
            limits.in_app_day,
            limits.in_app_week,
            limits.push_day,
            limits.push_week,
            now,
        )
        logger.info("budget_limits_applied", user_id=str(user_id), frequency_level=level.value)

    async def reset(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        conn: Optional[asyncpg.Connection] = None,
    ) -> None:
        """Zero every counter for the user (explicit reset only)."""
        now = now or utcnow()
        sql = """
            UPDATE guanzhao_budget
            SET used_in_app_day = 0, used_in_app_week = 0,
                used_push_day = 0, used_push_week = 0,
                last_updated_at = $2
            WHERE user_id = $1
        """

        if conn is not None:
            await conn.execute(sql, UUID(user_id), now)
        else:
            pool = await get_pool()
            async with pool.acquire() as acquired:
                await acquired.execute(sql, UUID(user_id), now)

        logger.info("budget_reset", user_id=user_id)
