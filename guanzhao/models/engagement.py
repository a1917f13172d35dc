"""Engagement settings, frequency ladder and budget models."""

from datetime import datetime, time
from enum import Enum
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class Channel(str, Enum):
    """Delivery surface for a nudge. Each channel has its own budgets."""

    IN_APP = "in_app"
    PUSH = "push"


class BudgetScope(str, Enum):
    """Budget accounting window."""

    DAY = "day"
    WEEK = "week"


class FrequencyLevel(str, Enum):
    """How often the user is willing to be nudged, most to least frequent."""

    EAGER = "eager"
    MODERATE = "moderate"
    SPARING = "sparing"
    SILENT = "silent"


# Ordered most to least frequent; feedback only ever moves right.
FREQUENCY_LADDER: list[FrequencyLevel] = [
    FrequencyLevel.EAGER,
    FrequencyLevel.MODERATE,
    FrequencyLevel.SPARING,
    FrequencyLevel.SILENT,
]


def next_lower_level(level: FrequencyLevel) -> FrequencyLevel:
    """Return the next step down the ladder, or ``level`` itself at the bottom."""
    index = FREQUENCY_LADDER.index(level)
    return FREQUENCY_LADDER[min(index + 1, len(FREQUENCY_LADDER) - 1)]


DEFAULT_FREQUENCY_LEVEL = FrequencyLevel.SPARING
DEFAULT_STYLE = "qingming"
DEFAULT_QUIET_HOURS_START = time(23, 30)
DEFAULT_QUIET_HOURS_END = time(8, 0)
DEFAULT_TIMEZONE = "UTC"


class BudgetLimits(BaseModel):
    """Per-channel daily and weekly limits."""

    in_app_day: int = Field(ge=0)
    in_app_week: int = Field(ge=0)
    push_day: int = Field(ge=0)
    push_week: int = Field(ge=0)


FREQUENCY_BUDGETS: dict[FrequencyLevel, BudgetLimits] = {
    FrequencyLevel.EAGER: BudgetLimits(in_app_day=3, in_app_week=15, push_day=2, push_week=7),
    FrequencyLevel.MODERATE: BudgetLimits(in_app_day=2, in_app_week=8, push_day=1, push_week=4),
    FrequencyLevel.SPARING: BudgetLimits(in_app_day=1, in_app_week=4, push_day=1, push_week=2),
    FrequencyLevel.SILENT: BudgetLimits(in_app_day=0, in_app_week=0, push_day=0, push_week=0),
}


def validate_timezone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {value}")
    return value


class UserEngagementSettings(BaseModel):
    """Per-user proactive engagement settings.

    A missing record behaves exactly like ``UserEngagementSettings.defaults()``.
    """

    user_id: UUID
    enabled: bool = True
    frequency_level: FrequencyLevel = DEFAULT_FREQUENCY_LEVEL
    style: str = DEFAULT_STYLE
    push_enabled: bool = False
    quiet_hours_start: Optional[time] = DEFAULT_QUIET_HOURS_START
    quiet_hours_end: Optional[time] = DEFAULT_QUIET_HOURS_END
    timezone: str = DEFAULT_TIMEZONE
    snoozed_until: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def defaults(cls, user_id: UUID) -> "UserEngagementSettings":
        """Settings a user has before anything was ever written for them."""
        return cls(user_id=user_id)

    def is_snoozed(self, now: datetime) -> bool:
        return self.snoozed_until is not None and self.snoozed_until > now


# Columns a partial update may explicitly clear.
NULLABLE_SETTINGS_FIELDS = frozenset({"quiet_hours_start", "quiet_hours_end", "snoozed_until"})


class SettingsUpdate(BaseModel):
    """Partial update of the user-mutable settings fields.

    Only fields explicitly present in the payload are written.
    """

    enabled: Optional[bool] = None
    frequency_level: Optional[FrequencyLevel] = None
    style: Optional[str] = Field(default=None, min_length=1, max_length=50)
    push_enabled: Optional[bool] = None
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    timezone: Optional[str] = None
    snoozed_until: Optional[datetime] = None

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: Optional[str]) -> Optional[str]:
        return validate_timezone(value)

    @model_validator(mode="after")
    def check_required_not_null(self) -> "SettingsUpdate":
        nulled = sorted(
            field
            for field in self.model_fields_set - NULLABLE_SETTINGS_FIELDS
            if getattr(self, field) is None
        )
        if nulled:
            raise ValueError(f"{', '.join(nulled)} cannot be null")
        return self

    @model_validator(mode="after")
    def check_quiet_hours_pair(self) -> "SettingsUpdate":
        fields = self.model_fields_set
        if ("quiet_hours_start" in fields) != ("quiet_hours_end" in fields):
            raise ValueError("quiet_hours_start and quiet_hours_end must be updated together")
        if (self.quiet_hours_start is None) != (self.quiet_hours_end is None):
            raise ValueError("quiet_hours_start and quiet_hours_end must both be set or both be null")
        return self

    def changes(self) -> dict:
        """Fields the caller actually sent, including explicit nulls."""
        return {key: getattr(self, key) for key in self.model_fields_set}


class BudgetState(BaseModel):
    """Stored budget ledger row for one user."""

    user_id: UUID
    budget_in_app_day: int = 0
    budget_in_app_week: int = 0
    budget_push_day: int = 0
    budget_push_week: int = 0
    used_in_app_day: int = 0
    used_in_app_week: int = 0
    used_push_day: int = 0
    used_push_week: int = 0
    last_updated_at: datetime

    def used(self, channel: Channel, scope: BudgetScope) -> int:
        return getattr(self, f"used_{channel.value}_{scope.value}")

    def limit(self, channel: Channel, scope: BudgetScope) -> int:
        return getattr(self, f"budget_{channel.value}_{scope.value}")

    def remaining(self, channel: Channel, scope: BudgetScope) -> int:
        return max(0, self.limit(channel, scope) - self.used(channel, scope))

    @classmethod
    def for_level(
        cls, user_id: UUID, level: FrequencyLevel, now: datetime
    ) -> "BudgetState":
        """Fresh, unused ledger with the limits of ``level``."""
        limits = FREQUENCY_BUDGETS[level]
        return cls(
            user_id=user_id,
            budget_in_app_day=limits.in_app_day,
            budget_in_app_week=limits.in_app_week,
            budget_push_day=limits.push_day,
            budget_push_week=limits.push_week,
            last_updated_at=now,
        )


class ConsumeResult(BaseModel):
    """Outcome of a consume-or-reject against one channel."""

    accepted: bool
    channel: Channel
    scope: BudgetScope
    used_after: int
    limit_remaining: int
    remaining_day: int
    remaining_week: int


class BudgetRemaining(BaseModel):
    """Remaining units per channel and scope after lazy reset."""

    in_app_day: int
    in_app_week: int
    push_day: int
    push_week: int
    used_in_app_day: int
    used_in_app_week: int
    used_push_day: int
    used_push_week: int

    @classmethod
    def from_state(cls, state: BudgetState) -> "BudgetRemaining":
        return cls(
            in_app_day=state.remaining(Channel.IN_APP, BudgetScope.DAY),
            in_app_week=state.remaining(Channel.IN_APP, BudgetScope.WEEK),
            push_day=state.remaining(Channel.PUSH, BudgetScope.DAY),
            push_week=state.remaining(Channel.PUSH, BudgetScope.WEEK),
            used_in_app_day=state.used_in_app_day,
            used_in_app_week=state.used_in_app_week,
            used_push_day=state.used_push_day,
            used_push_week=state.used_push_week,
        )
