"""Chat session tracking and the trigger candidates derived from it.

Candidates are advisory: the caller still runs them through
``TriggerService.evaluate`` and ``commit_firing`` before showing anything.
"""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID, uuid4

import structlog

from guanzhao.config import get_settings
from guanzhao.database import get_pool
from guanzhao.models.engagement import Channel
from guanzhao.models.session import (
    SessionEventKind,
    SessionEventRequest,
    SessionEventResult,
    SessionRecord,
)
from guanzhao.models.trigger import TriggerCandidate, TriggerId
from guanzhao.services.errors import NotFoundError
from guanzhao.services.settings_service import SettingsService
from guanzhao.services.time_window import local_day_start, local_now, utcnow
from guanzhao.services.trigger_service import TriggerService

logger = structlog.get_logger(__name__)

SESSION_COLUMNS = """
    id, user_id, timezone, started_at, ended_at, last_activity_at, messages_count
"""


def _session_from_row(row) -> SessionRecord:
    return SessionRecord(**dict(row))


def _hour_in(hour: int, start: int, end: int) -> bool:
    return start <= hour < end


class SessionService:
    """Records session start/activity/end and proposes triggers."""

    def __init__(self):
        self.config = get_settings()
        self.settings_service = SettingsService()
        self.triggers = TriggerService()

    async def handle_event(
        self,
        user_id: str,
        request: SessionEventRequest,
        now: Optional[datetime] = None,
    ) -> SessionEventResult:
        now = now or utcnow()

        if request.kind == SessionEventKind.START:
            session, candidate = await self._start(user_id, request, now)
        elif request.kind == SessionEventKind.CONTINUE:
            session, candidate = await self._continue(user_id, request, now)
        else:
            session, candidate = await self._end(user_id, request, now)

        logger.info(
            "session_event_handled",
            user_id=user_id,
            session_id=str(session.id),
            kind=request.kind.value,
            candidate=candidate.trigger_id.value if candidate else None,
        )

        return SessionEventResult(
            success=True,
            session_id=session.id,
            should_trigger=candidate,
        )

    async def _start(
        self, user_id: str, request: SessionEventRequest, now: datetime
    ) -> tuple[SessionRecord, Optional[TriggerCandidate]]:
        settings = await self.settings_service.ensure_settings(user_id, request.timezone)
        tz = request.timezone or settings.timezone or self.config.default_timezone
        uid = UUID(user_id)
        day_start = local_day_start(tz, now)
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO guanzhao_sessions
                    (id, user_id, timezone, started_at, last_activity_at, messages_count)
                VALUES ($1, $2, $3, $4, $4, 0)
                RETURNING {SESSION_COLUMNS}
                """,
                uuid4(),
                uid,
                tz,
                now,
            )
            started_today = await conn.fetchval(
                """
                SELECT COUNT(*) FROM guanzhao_sessions
                WHERE user_id = $1 AND started_at >= $2
                """,
                uid,
                day_start,
            )

        session = _session_from_row(row)

        candidate = None
        if started_today == 1:
            already_checked_in = await self.triggers.has_fired_since(
                user_id, TriggerId.DAILY_CHECKIN.value, Channel.IN_APP, day_start
            )
            if not already_checked_in:
                candidate = TriggerCandidate(
                    trigger_id=TriggerId.DAILY_CHECKIN,
                    reason="first session of the day",
                )

        return session, candidate

    async def _continue(
        self, user_id: str, request: SessionEventRequest, now: datetime
    ) -> tuple[SessionRecord, Optional[TriggerCandidate]]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE guanzhao_sessions
                SET last_activity_at = $3,
                    messages_count = COALESCE($4, messages_count)
                WHERE id = $1 AND user_id = $2
                RETURNING {SESSION_COLUMNS}
                """,
                request.session_id,
                UUID(user_id),
                now,
                request.messages_count,
            )

        if row is None:
            raise NotFoundError("session", str(request.session_id))

        session = _session_from_row(row)
        local_hour = local_now(session.timezone, now).hour
        duration = now - session.started_at

        reason = None
        if _hour_in(local_hour, self.config.late_night_start_hour, self.config.late_night_end_hour):
            reason = "late night session"
        elif duration >= timedelta(minutes=self.config.overload_session_minutes):
            reason = f"session longer than {self.config.overload_session_minutes} minutes"

        if reason is None:
            return session, None

        last = await self.triggers.last_fired_at(
            user_id, TriggerId.OVERLOAD_PROTECTION.value, Channel.IN_APP
        )
        throttle = timedelta(minutes=self.config.overload_throttle_minutes)
        if last is not None and now - last < throttle:
            return session, None

        return session, TriggerCandidate(trigger_id=TriggerId.OVERLOAD_PROTECTION, reason=reason)

    async def _end(
        self, user_id: str, request: SessionEventRequest, now: datetime
    ) -> tuple[SessionRecord, Optional[TriggerCandidate]]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE guanzhao_sessions
                SET ended_at = COALESCE(ended_at, $3),
                    last_activity_at = GREATEST(last_activity_at, $3),
                    messages_count = COALESCE($4, messages_count)
                WHERE id = $1 AND user_id = $2
                RETURNING {SESSION_COLUMNS}
                """,
                request.session_id,
                UUID(user_id),
                now,
                request.messages_count,
            )

        if row is None:
            raise NotFoundError("session", str(request.session_id))

        session = _session_from_row(row)
        local_hour = local_now(session.timezone, now).hour

        if not _hour_in(
            local_hour,
            self.config.nightly_wrapup_start_hour,
            self.config.nightly_wrapup_end_hour,
        ):
            return session, None

        wrapped_up = await self.triggers.has_fired_since(
            user_id,
            TriggerId.NIGHTLY_WRAPUP.value,
            Channel.IN_APP,
            local_day_start(session.timezone, now),
        )
        if wrapped_up:
            return session, None

        return session, TriggerCandidate(
            trigger_id=TriggerId.NIGHTLY_WRAPUP,
            reason="session ended in the evening",
        )

    async def get_session(self, user_id: str, session_id: UUID) -> SessionRecord:
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {SESSION_COLUMNS} FROM guanzhao_sessions WHERE id = $1 AND user_id = $2",
                session_id,
                UUID(user_id),
            )

        if row is None:
            raise NotFoundError("session", str(session_id))
        return _session_from_row(row)

    async def list_sessions(self, user_id: str, limit: int = 20) -> list[SessionRecord]:
        """Most recently started first."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {SESSION_COLUMNS} FROM guanzhao_sessions
                WHERE user_id = $1
                ORDER BY started_at DESC
                LIMIT $2
                """,
                UUID(user_id),
                limit,
            )

        return [_session_from_row(row) for row in rows]
