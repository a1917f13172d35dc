"""Unit tests for CooldownService."""

from datetime import timedelta
from unittest.mock import patch
from uuid import UUID

import pytest

from conftest import utc
from guanzhao.models.engagement import Channel
from guanzhao.services.cooldown_service import CooldownService


@pytest.fixture
def service():
    return CooldownService()


class TestGetCooldownUntil:
    @pytest.mark.asyncio
    async def test_returns_future_expiry(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        now = utc(2025, 1, 6, 9)
        conn.fetchval.return_value = now + timedelta(days=2)

        with patch("guanzhao.services.cooldown_service.get_pool", return_value=pool):
            until = await service.get_cooldown_until(user_id, "daily_checkin", Channel.IN_APP, now)

        assert until == now + timedelta(days=2)
        args = conn.fetchval.call_args.args
        assert args[1] == UUID(user_id)
        assert args[2] == "daily_checkin"
        assert args[3] == "in_app"

    @pytest.mark.asyncio
    async def test_expired_record_is_ignored(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        now = utc(2025, 1, 6, 9)
        conn.fetchval.return_value = now - timedelta(minutes=1)

        with patch("guanzhao.services.cooldown_service.get_pool", return_value=pool):
            assert await service.is_on_cooldown(user_id, "daily_checkin", Channel.IN_APP, now) is False

    @pytest.mark.asyncio
    async def test_expiry_equal_to_now_is_not_active(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        now = utc(2025, 1, 6, 9)
        conn.fetchval.return_value = now

        with patch("guanzhao.services.cooldown_service.get_pool", return_value=pool):
            assert await service.get_cooldown_until(user_id, "x", Channel.PUSH, now) is None

    @pytest.mark.asyncio
    async def test_missing_record(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        conn.fetchval.return_value = None

        with patch("guanzhao.services.cooldown_service.get_pool", return_value=pool):
            assert await service.is_on_cooldown(user_id, "x", Channel.PUSH, utc(2025, 1, 6)) is False


class TestSetCooldown:
    @pytest.mark.asyncio
    async def test_upserts_now_plus_duration(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        now = utc(2025, 1, 6, 9)

        with patch("guanzhao.services.cooldown_service.get_pool", return_value=pool):
            until = await service.set_cooldown(user_id, "nightly_wrapup", Channel.PUSH, 1.5, now=now)

        assert until == now + timedelta(hours=36)
        sql, *args = conn.execute.call_args.args
        assert "ON CONFLICT (user_id, trigger_id, channel)" in sql
        assert args == [UUID(user_id), "nightly_wrapup", "push", until]

    @pytest.mark.asyncio
    async def test_writes_on_given_connection(self, service, mock_pool, user_id):
        _, conn = mock_pool

        with patch("guanzhao.services.cooldown_service.get_pool") as mock_get_pool:
            await service.set_cooldown(user_id, "x", Channel.IN_APP, 1, now=utc(2025, 1, 6), conn=conn)

        mock_get_pool.assert_not_called()
        conn.execute.assert_called_once()


class TestClearCooldown:
    @pytest.mark.asyncio
    async def test_clear_existing(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        conn.execute.return_value = "DELETE 1"

        with patch("guanzhao.services.cooldown_service.get_pool", return_value=pool):
            assert await service.clear_cooldown(user_id, "x", Channel.IN_APP) is True

    @pytest.mark.asyncio
    async def test_clear_missing(self, service, mock_pool, user_id):
        pool, conn = mock_pool
        conn.execute.return_value = "DELETE 0"

        with patch("guanzhao.services.cooldown_service.get_pool", return_value=pool):
            assert await service.clear_cooldown(user_id, "x", Channel.IN_APP) is False
