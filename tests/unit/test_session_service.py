"""Unit tests for SessionService and the candidates it derives."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import UUID, uuid4

import pytest
from pydantic import ValidationError

from conftest import utc
from guanzhao.models.engagement import UserEngagementSettings
from guanzhao.models.session import SessionEventKind, SessionEventRequest, SessionState
from guanzhao.models.trigger import TriggerId
from guanzhao.services.errors import NotFoundError
from guanzhao.services.session_service import SessionService


def _session_row(user_id, session_id=None, timezone_name="UTC", **overrides) -> dict:
    started = overrides.pop("started_at", utc(2025, 1, 6, 9))
    row = {
        "id": session_id or uuid4(),
        "user_id": UUID(user_id),
        "timezone": timezone_name,
        "started_at": started,
        "ended_at": None,
        "last_activity_at": started,
        "messages_count": 0,
    }
    row.update(overrides)
    return row


@pytest.fixture
def service():
    svc = SessionService()
    svc.settings_service = MagicMock()
    svc.settings_service.ensure_settings = AsyncMock()
    svc.triggers = MagicMock()
    svc.triggers.has_fired_since = AsyncMock(return_value=False)
    svc.triggers.last_fired_at = AsyncMock(return_value=None)
    return svc


@pytest.fixture
def provisioned(service, user_id):
    settings = UserEngagementSettings(user_id=UUID(user_id), timezone="Asia/Shanghai")
    service.settings_service.ensure_settings.return_value = settings
    return settings


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

class TestSessionEventRequest:
    def test_start_without_session_id(self):
        request = SessionEventRequest(kind=SessionEventKind.START)
        assert request.session_id is None

    def test_continue_requires_session_id(self):
        with pytest.raises(ValidationError):
            SessionEventRequest(kind=SessionEventKind.CONTINUE)

    def test_rejects_negative_message_count(self):
        with pytest.raises(ValidationError):
            SessionEventRequest(kind=SessionEventKind.END, session_id=uuid4(), messages_count=-1)


# ---------------------------------------------------------------------------
# start
# ---------------------------------------------------------------------------

class TestStart:
    @pytest.mark.asyncio
    async def test_first_session_of_day_proposes_checkin(self, service, provisioned, mock_pool, user_id):
        pool, conn = mock_pool
        conn.fetchrow.return_value = _session_row(user_id, timezone_name="Asia/Shanghai")
        conn.fetchval.return_value = 1

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            result = await service.handle_event(
                user_id, SessionEventRequest(kind=SessionEventKind.START), utc(2025, 1, 6, 1)
            )

        assert result.success is True
        assert result.session_id is not None
        assert result.should_trigger.trigger_id == TriggerId.DAILY_CHECKIN
        service.settings_service.ensure_settings.assert_awaited_once_with(user_id, None)

    @pytest.mark.asyncio
    async def test_session_timezone_prefers_request(self, service, provisioned, mock_pool, user_id):
        pool, conn = mock_pool
        conn.fetchrow.return_value = _session_row(user_id, timezone_name="Europe/Berlin")
        conn.fetchval.return_value = 2

        request = SessionEventRequest(kind=SessionEventKind.START, timezone="Europe/Berlin")
        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            await service.handle_event(user_id, request, utc(2025, 1, 6, 9))

        assert conn.fetchrow.call_args.args[3] == "Europe/Berlin"
        service.settings_service.ensure_settings.assert_awaited_once_with(user_id, "Europe/Berlin")

    @pytest.mark.asyncio
    async def test_session_timezone_falls_back_to_settings(self, service, provisioned, mock_pool, user_id):
        pool, conn = mock_pool
        conn.fetchrow.return_value = _session_row(user_id, timezone_name="Asia/Shanghai")
        conn.fetchval.return_value = 2

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            await service.handle_event(
                user_id, SessionEventRequest(kind=SessionEventKind.START), utc(2025, 1, 6, 9)
            )

        assert conn.fetchrow.call_args.args[3] == "Asia/Shanghai"

    @pytest.mark.asyncio
    async def test_second_session_of_day_proposes_nothing(self, service, provisioned, mock_pool, user_id):
        pool, conn = mock_pool
        conn.fetchrow.return_value = _session_row(user_id)
        conn.fetchval.return_value = 2

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            result = await service.handle_event(
                user_id, SessionEventRequest(kind=SessionEventKind.START), utc(2025, 1, 6, 9)
            )

        assert result.should_trigger is None
        service.triggers.has_fired_since.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_checkin_already_shown_today(self, service, provisioned, mock_pool, user_id):
        pool, conn = mock_pool
        conn.fetchrow.return_value = _session_row(user_id)
        conn.fetchval.return_value = 1
        service.triggers.has_fired_since.return_value = True

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            result = await service.handle_event(
                user_id, SessionEventRequest(kind=SessionEventKind.START), utc(2025, 1, 6, 9)
            )

        assert result.should_trigger is None

    @pytest.mark.asyncio
    async def test_day_boundary_in_user_timezone(self, service, provisioned, mock_pool, user_id):
        pool, conn = mock_pool
        conn.fetchrow.return_value = _session_row(user_id)
        conn.fetchval.return_value = 1

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            await service.handle_event(
                user_id, SessionEventRequest(kind=SessionEventKind.START), utc(2025, 1, 6, 20)
            )

        # 20:00 UTC is 04:00 on Jan 7 in Shanghai; the local day began at 16:00 UTC
        assert conn.fetchval.call_args.args[2] == utc(2025, 1, 6, 16)


# ---------------------------------------------------------------------------
# continue
# ---------------------------------------------------------------------------

class TestContinue:
    def _request(self, session_id, messages_count=None):
        return SessionEventRequest(
            kind=SessionEventKind.CONTINUE, session_id=session_id, messages_count=messages_count
        )

    @pytest.mark.asyncio
    async def test_short_daytime_session_proposes_nothing(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        session_id = uuid4()
        conn.fetchrow.return_value = _session_row(user_id, session_id, started_at=utc(2025, 1, 6, 9))

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            result = await service.handle_event(user_id, self._request(session_id, 5), utc(2025, 1, 6, 9, 20))

        assert result.should_trigger is None
        assert conn.fetchrow.call_args.args[4] == 5

    @pytest.mark.asyncio
    async def test_long_session_proposes_overload(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        session_id = uuid4()
        conn.fetchrow.return_value = _session_row(user_id, session_id, started_at=utc(2025, 1, 6, 9))

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            result = await service.handle_event(user_id, self._request(session_id), utc(2025, 1, 6, 9, 45))

        assert result.should_trigger.trigger_id == TriggerId.OVERLOAD_PROTECTION

    @pytest.mark.asyncio
    async def test_late_night_proposes_overload(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        session_id = uuid4()
        conn.fetchrow.return_value = _session_row(
            user_id, session_id, timezone_name="Asia/Shanghai", started_at=utc(2025, 1, 6, 16, 10)
        )

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            # 16:20 UTC is 00:20 in Shanghai
            result = await service.handle_event(user_id, self._request(session_id), utc(2025, 1, 6, 16, 20))

        assert result.should_trigger.trigger_id == TriggerId.OVERLOAD_PROTECTION

    @pytest.mark.asyncio
    async def test_overload_throttled_after_recent_firing(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        session_id = uuid4()
        now = utc(2025, 1, 6, 10)
        conn.fetchrow.return_value = _session_row(user_id, session_id, started_at=utc(2025, 1, 6, 9))
        service.triggers.last_fired_at.return_value = now - timedelta(minutes=29)

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            result = await service.handle_event(user_id, self._request(session_id), now)

        assert result.should_trigger is None

    @pytest.mark.asyncio
    async def test_overload_allowed_again_after_throttle(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        session_id = uuid4()
        now = utc(2025, 1, 6, 10)
        conn.fetchrow.return_value = _session_row(user_id, session_id, started_at=utc(2025, 1, 6, 9))
        service.triggers.last_fired_at.return_value = now - timedelta(minutes=30)

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            result = await service.handle_event(user_id, self._request(session_id), now)

        assert result.should_trigger.trigger_id == TriggerId.OVERLOAD_PROTECTION

    @pytest.mark.asyncio
    async def test_unknown_session(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        conn.fetchrow.return_value = None

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            with pytest.raises(NotFoundError):
                await service.handle_event(user_id, self._request(uuid4()), utc(2025, 1, 6, 10))


# ---------------------------------------------------------------------------
# end
# ---------------------------------------------------------------------------

class TestEnd:
    def _request(self, session_id):
        return SessionEventRequest(kind=SessionEventKind.END, session_id=session_id)

    @pytest.mark.asyncio
    async def test_evening_end_proposes_wrapup(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        session_id = uuid4()
        now = utc(2025, 1, 6, 21)
        conn.fetchrow.return_value = _session_row(user_id, session_id, ended_at=now)

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            result = await service.handle_event(user_id, self._request(session_id), now)

        assert result.should_trigger.trigger_id == TriggerId.NIGHTLY_WRAPUP
        assert "COALESCE(ended_at" in conn.fetchrow.call_args.args[0]

    @pytest.mark.asyncio
    async def test_wrapup_window_end_is_exclusive(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        session_id = uuid4()
        now = utc(2025, 1, 6, 23)
        conn.fetchrow.return_value = _session_row(user_id, session_id, ended_at=now)

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            result = await service.handle_event(user_id, self._request(session_id), now)

        assert result.should_trigger is None

    @pytest.mark.asyncio
    async def test_wrapup_only_once_per_day(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        session_id = uuid4()
        now = utc(2025, 1, 6, 20, 30)
        conn.fetchrow.return_value = _session_row(user_id, session_id, ended_at=now)
        service.triggers.has_fired_since.return_value = True

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            result = await service.handle_event(user_id, self._request(session_id), now)

        assert result.should_trigger is None

    @pytest.mark.asyncio
    async def test_ended_session_state(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        session_id = uuid4()
        conn.fetchrow.return_value = _session_row(user_id, session_id, ended_at=utc(2025, 1, 6, 10))

        with patch("guanzhao.services.session_service.get_pool", return_value=pool):
            session = await service.get_session(user_id, session_id)

        assert session.state == SessionState.ENDED
