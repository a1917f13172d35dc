"""Exception types raised by the engagement engine.

Denials from the trigger gate are ordinary return values (see
``guanzhao.models.trigger.Denied``); only the conditions below are raised.
Store failures (asyncpg, I/O) are never wrapped and reach the caller as-is.
"""

from typing import Optional


class GuanzhaoError(Exception):
    """Base class for engine errors."""

    pass


class NotFoundError(GuanzhaoError):
    """Raised when a session or trigger history id does not exist for the user.

    Attributes:
        resource: Kind of record that was looked up ("session", "trigger_history")
        resource_id: Identifier the caller supplied
    """

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class BudgetExceededError(GuanzhaoError):
    """Raised by the commit path when the budget ledger rejects a consume.

    Nothing is written when this is raised: the surrounding transaction is
    rolled back, so no history entry or cooldown exists for the attempt.

    Attributes:
        channel: Channel whose pool was exhausted
        requested: Budget units the commit asked for
        remaining_day: Units left in the daily pool after reconciliation
        remaining_week: Units left in the weekly pool after reconciliation
    """

    def __init__(
        self,
        channel: str,
        requested: int,
        remaining_day: int,
        remaining_week: int,
    ):
        self.channel = channel
        self.requested = requested
        self.remaining_day = remaining_day
        self.remaining_week = remaining_week
        super().__init__(
            f"budget exceeded on {channel}: requested {requested}, "
            f"remaining day={remaining_day} week={remaining_week}"
        )


class ConfigurationError(GuanzhaoError):
    """Raised when a record the engine assumes was provisioned is missing."""

    def __init__(self, message: str, user_id: Optional[str] = None):
        self.user_id = user_id
        super().__init__(message)
