"""Trigger gate (admission control), commit path, feedback and history."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import structlog

from guanzhao.config import get_settings
from guanzhao.database import get_pool
from guanzhao.models.engagement import Channel
from guanzhao.models.trigger import (
    Allowed,
    CommitRequest,
    CommitResult,
    Decision,
    Denied,
    DenyReason,
    FeedbackTag,
    HistoryStatus,
    TriggerHistoryEntry,
    TriggerStats,
)
from guanzhao.services.budget_service import BudgetService
from guanzhao.services.cooldown_service import CooldownService
from guanzhao.services.errors import BudgetExceededError, ConfigurationError, NotFoundError
from guanzhao.services.settings_service import SettingsService
from guanzhao.services.time_window import (
    is_in_range,
    local_day_start,
    local_now,
    local_week_start,
    parse_time_of_day,
    utcnow,
)

logger = structlog.get_logger(__name__)

HISTORY_COLUMNS = """
    id, user_id, trigger_id, channel, template_id, status, feedback, action_taken, created_at
"""


def _entry_from_row(row) -> TriggerHistoryEntry:
    return TriggerHistoryEntry(**dict(row))


class TriggerService:
    """Decides whether a nudge may be shown and records the ones that were."""

    def __init__(self):
        self.config = get_settings()
        self.settings_service = SettingsService()
        self.budgets = BudgetService()
        self.cooldowns = CooldownService()

    async def evaluate(
        self,
        user_id: str,
        trigger_id: str,
        channel: Channel,
        now: Optional[datetime] = None,
    ) -> Decision:
        """Run the admission checks in order and stop at the first failure.

        Order: settings present, enabled, not snoozed, (push only) push
        switched on and outside quiet hours, not on cooldown. Budget is not
        checked here; it is checked and consumed atomically by
        ``commit_firing``.
        """
        now = now or utcnow()
        decision = await self._evaluate(user_id, trigger_id, channel, now)

        logger.info(
            "trigger_evaluated",
            user_id=user_id,
            trigger_id=trigger_id,
            channel=channel.value,
            allowed=decision.allowed,
            reason=None if decision.allowed else decision.reason.value,
        )
        return decision

    async def _evaluate(
        self, user_id: str, trigger_id: str, channel: Channel, now: datetime
    ) -> Decision:
        settings = await self.settings_service.get_cached_settings(user_id)
        if settings is None:
            logger.error(
                "guanzhao_settings_missing",
                user_id=user_id,
                note="settings should be provisioned before triggers are evaluated",
            )
            return Denied(
                reason=DenyReason.SETTINGS_NOT_FOUND,
                detail="No engagement settings provisioned for user",
            )

        if not settings.enabled:
            return Denied(reason=DenyReason.DISABLED)

        if settings.is_snoozed(now):
            return Denied(
                reason=DenyReason.SNOOZED,
                detail=f"Snoozed until {settings.snoozed_until.isoformat()}",
                until=settings.snoozed_until,
            )

        if channel == Channel.PUSH:
            if not settings.push_enabled:
                return Denied(reason=DenyReason.PUSH_DISABLED)

            start = settings.quiet_hours_start or parse_time_of_day(self.config.dnd_default_start)
            end = settings.quiet_hours_end or parse_time_of_day(self.config.dnd_default_end)
            current = local_now(settings.timezone, now).time()
            if is_in_range(current, start, end):
                return Denied(
                    reason=DenyReason.IN_DND_WINDOW,
                    detail=f"Quiet hours {start.strftime('%H:%M')}-{end.strftime('%H:%M')} ({settings.timezone})",
                )

        cooldown_until = await self.cooldowns.get_cooldown_until(user_id, trigger_id, channel, now)
        if cooldown_until is not None:
            return Denied(
                reason=DenyReason.ON_COOLDOWN,
                detail=f"Cooldown until {cooldown_until.isoformat()}",
                until=cooldown_until,
            )

        return Allowed(settings=settings)

    async def commit_firing(
        self,
        user_id: str,
        request: CommitRequest,
        now: Optional[datetime] = None,
    ) -> CommitResult:
        """Consume budget, append history and set the cooldown as one unit.

        Must follow a successful ``evaluate``; only the budget is re-checked
        here. If the ledger rejects the consume, ``BudgetExceededError`` is
        raised and the transaction rolls back, so neither history nor
        cooldown is written.

        Raises:
            ConfigurationError: The user has no settings record
            BudgetExceededError: Daily or weekly pool for the channel is exhausted
        """
        now = now or utcnow()
        uid = UUID(user_id)
        history_id = uuid4()
        cooldown_until = None
        pool = await get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                provisioned = await conn.fetchval(
                    "SELECT 1 FROM guanzhao_settings WHERE user_id = $1",
                    uid,
                )
                if provisioned is None:
                    raise ConfigurationError(
                        "commit_firing called for a user without engagement settings",
                        user_id=user_id,
                    )

                consumed = await self.budgets.consume_locked(
                    conn, uid, request.channel, request.budget_cost, now
                )
                if not consumed.accepted:
                    logger.info(
                        "trigger_commit_rejected",
                        user_id=user_id,
                        trigger_id=request.trigger_id,
                        channel=request.channel.value,
                        budget_cost=request.budget_cost,
                        remaining_day=consumed.remaining_day,
                        remaining_week=consumed.remaining_week,
                    )
                    raise BudgetExceededError(
                        channel=request.channel.value,
                        requested=request.budget_cost,
                        remaining_day=consumed.remaining_day,
                        remaining_week=consumed.remaining_week,
                    )

                await conn.execute(
                    """
                    INSERT INTO guanzhao_trigger_history
                        (id, user_id, trigger_id, channel, template_id, status, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    history_id,
                    uid,
                    request.trigger_id,
                    request.channel.value,
                    request.template_id,
                    HistoryStatus.SHOWN.value,
                    now,
                )

                if request.cooldown_days > 0:
                    cooldown_until = await self.cooldowns.set_cooldown(
                        user_id,
                        request.trigger_id,
                        request.channel,
                        request.cooldown_days,
                        now=now,
                        conn=conn,
                    )

        logger.info(
            "trigger_committed",
            user_id=user_id,
            trigger_id=request.trigger_id,
            channel=request.channel.value,
            template_id=request.template_id,
            history_id=str(history_id),
            budget_cost=request.budget_cost,
        )

        return CommitResult(
            accepted=True,
            history_id=history_id,
            cooldown_until=cooldown_until,
            remaining_day=consumed.remaining_day,
            remaining_week=consumed.remaining_week,
        )

    async def record_feedback(
        self, user_id: str, history_id: UUID, tag: FeedbackTag
    ) -> TriggerHistoryEntry:
        """Annotate a history entry; "too_frequent" also lowers the frequency level.

        The annotation and the level change commit together.

        Raises:
            NotFoundError: The history entry does not exist for this user
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    UPDATE guanzhao_trigger_history
                    SET feedback = $3
                    WHERE id = $1 AND user_id = $2
                    RETURNING {HISTORY_COLUMNS}
                    """,
                    history_id,
                    UUID(user_id),
                    tag.value,
                )

                if row is None:
                    raise NotFoundError("trigger_history", str(history_id))

                if tag == FeedbackTag.TOO_FREQUENT:
                    await self.settings_service.escalate_down(user_id, conn=conn)

        logger.info(
            "trigger_feedback_recorded",
            user_id=user_id,
            history_id=str(history_id),
            feedback=tag.value,
        )

        return _entry_from_row(row)

    async def get_history_entry(self, user_id: str, history_id: UUID) -> TriggerHistoryEntry:
        """Raises NotFoundError unless the entry exists and belongs to the user."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {HISTORY_COLUMNS} FROM guanzhao_trigger_history WHERE id = $1 AND user_id = $2",
                history_id,
                UUID(user_id),
            )

        if row is None:
            raise NotFoundError("trigger_history", str(history_id))

        return _entry_from_row(row)

    async def mark_action(
        self, user_id: str, history_id: UUID, action: str
    ) -> TriggerHistoryEntry:
        """Record that the user pressed a button on a shown nudge."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE guanzhao_trigger_history
                SET status = $3, action_taken = $4
                WHERE id = $1 AND user_id = $2
                RETURNING {HISTORY_COLUMNS}
                """,
                history_id,
                UUID(user_id),
                HistoryStatus.CLICKED.value,
                action,
            )

        if row is None:
            raise NotFoundError("trigger_history", str(history_id))

        return _entry_from_row(row)

    async def list_history(
        self,
        user_id: str,
        trigger_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[TriggerHistoryEntry]:
        """Most recent fired triggers first."""
        pool = await get_pool()

        conditions = ["user_id = $1"]
        params: list = [UUID(user_id)]
        if trigger_id is not None:
            conditions.append("trigger_id = $2")
            params.append(trigger_id)

        where_clause = " AND ".join(conditions)

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {HISTORY_COLUMNS}
                FROM guanzhao_trigger_history
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT ${len(params) + 1}
                """,
                *params,
                limit,
            )

        return [_entry_from_row(row) for row in rows]

    async def recently_used_templates(
        self, user_id: str, trigger_id: str, limit: int = 5
    ) -> list[str]:
        """Template ids last shown for a trigger, so callers can rotate content."""
        entries = await self.list_history(user_id, trigger_id=trigger_id, limit=limit)
        return [entry.template_id for entry in entries if entry.template_id]

    async def last_fired_at(
        self, user_id: str, trigger_id: str, channel: Channel
    ) -> Optional[datetime]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT created_at FROM guanzhao_trigger_history
                WHERE user_id = $1 AND trigger_id = $2 AND channel = $3
                ORDER BY created_at DESC
                LIMIT 1
                """,
                UUID(user_id),
                trigger_id,
                channel.value,
            )

    async def has_fired_since(
        self, user_id: str, trigger_id: str, channel: Channel, since: datetime
    ) -> bool:
        last = await self.last_fired_at(user_id, trigger_id, channel)
        return last is not None and last >= since

    async def trigger_stats(
        self, user_id: str, trigger_id: str, now: Optional[datetime] = None
    ) -> TriggerStats:
        """Counts of a trigger's firings today, this week and overall."""
        now = now or utcnow()
        settings = await self.settings_service.get_effective_settings(user_id)
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    COUNT(*) FILTER (WHERE created_at >= $3) AS today,
                    COUNT(*) FILTER (WHERE created_at >= $4) AS week,
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE status = 'clicked') AS clicked,
                    COUNT(*) FILTER (WHERE status = 'dismissed') AS dismissed
                FROM guanzhao_trigger_history
                WHERE user_id = $1 AND trigger_id = $2
                """,
                UUID(user_id),
                trigger_id,
                local_day_start(settings.timezone, now),
                local_week_start(settings.timezone, now),
            )

        return TriggerStats(
            today=row["today"] or 0,
            week=row["week"] or 0,
            total=row["total"] or 0,
            clicked=row["clicked"] or 0,
            dismissed=row["dismissed"] or 0,
        )
