"""Dispatch of action buttons attached to nudges.

Action identifiers are dotted strings; the part before the first dot selects
the handler and the remainder is its argument (``open_flow.breathing``,
``feedback.too_frequent``).
"""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import structlog

from guanzhao.models.action import ActionResult
from guanzhao.models.trigger import FeedbackTag
from guanzhao.services.settings_service import SettingsService
from guanzhao.services.time_window import next_local_midnight, utcnow
from guanzhao.services.trigger_service import TriggerService

logger = structlog.get_logger(__name__)

SETTINGS_REDIRECT = "/settings/guanzhao"
CRISIS_RESOURCES_REDIRECT = "/resources/crisis"


class ActionService:
    """Maps action identifiers onto settings changes, feedback and redirects."""

    def __init__(self):
        self.settings_service = SettingsService()
        self.triggers = TriggerService()

    async def dispatch(
        self,
        user_id: str,
        action: str,
        trigger_history_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> ActionResult:
        """Run one action and, when a history id is given, mark the entry clicked.

        The history id is checked before the action writes anything.

        Raises:
            ValueError: Unknown action, or ``feedback.*`` without a history id
            NotFoundError: The history id does not belong to the user
        """
        now = now or utcnow()
        if trigger_history_id is not None:
            await self.triggers.get_history_entry(user_id, trigger_history_id)

        result = await self._run(user_id, action, trigger_history_id, now)

        if trigger_history_id is not None:
            await self.triggers.mark_action(user_id, trigger_history_id, action)

        logger.info(
            "guanzhao_action_dispatched",
            user_id=user_id,
            action=action,
            trigger_history_id=str(trigger_history_id) if trigger_history_id else None,
        )
        return result

    async def _run(
        self,
        user_id: str,
        action: str,
        trigger_history_id: Optional[UUID],
        now: datetime,
    ) -> ActionResult:
        name, _, argument = action.partition(".")

        if name == "snooze":
            return await self._snooze(user_id, argument, now)

        if action == "disable_guanzhao":
            await self.settings_service.disable(user_id)
            return ActionResult(success=True, message="Proactive nudges turned off")

        if action == "keep_weekly_only":
            await self.settings_service.downgrade_to_minimal(user_id)
            return ActionResult(success=True, message="Frequency lowered to the minimum")

        if action == "open_settings_guanzhao":
            return ActionResult(success=True, redirect_url=SETTINGS_REDIRECT)

        if name == "open_flow" and argument:
            return ActionResult(success=True, redirect_url=f"/flow/{argument}")

        if name == "feedback":
            return await self._feedback(user_id, argument, trigger_history_id)

        if action == "safety.open_resources":
            return ActionResult(success=True, redirect_url=CRISIS_RESOURCES_REDIRECT)

        if action == "safety.confirm_safe":
            return ActionResult(success=True, message="Thanks for letting us know")

        raise ValueError(f"Unknown action: {action}")

    async def _snooze(self, user_id: str, period: str, now: datetime) -> ActionResult:
        if period == "24h":
            until = now + timedelta(hours=24)
        elif period == "7d":
            until = now + timedelta(days=7)
        elif period == "today":
            settings = await self.settings_service.get_effective_settings(user_id)
            until = next_local_midnight(settings.timezone, now)
        else:
            raise ValueError(f"Unknown snooze period: {period}")

        await self.settings_service.snooze(user_id, until)
        return ActionResult(success=True, message=f"Snoozed until {until.isoformat()}")

    async def _feedback(
        self, user_id: str, tag: str, trigger_history_id: Optional[UUID]
    ) -> ActionResult:
        try:
            feedback = FeedbackTag(tag)
        except ValueError:
            raise ValueError(f"Unknown feedback tag: {tag}")

        if trigger_history_id is None:
            raise ValueError("feedback actions require trigger_history_id")

        await self.triggers.record_feedback(user_id, trigger_history_id, feedback)
        return ActionResult(success=True, message="Feedback recorded")
