"""Trigger gate decisions, commit requests and trigger history models."""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from guanzhao.models.engagement import Channel, UserEngagementSettings


class TriggerId(str, Enum):
    """Triggers the session tracker can propose."""

    DAILY_CHECKIN = "daily_checkin"
    NIGHTLY_WRAPUP = "nightly_wrapup"
    OVERLOAD_PROTECTION = "overload_protection"


class DenyReason(str, Enum):
    """Why the gate refused a nudge, in evaluation order."""

    SETTINGS_NOT_FOUND = "SettingsNotFound"
    DISABLED = "Disabled"
    SNOOZED = "Snoozed"
    PUSH_DISABLED = "PushDisabled"
    IN_DND_WINDOW = "InDndWindow"
    ON_COOLDOWN = "OnCooldown"


class Allowed(BaseModel):
    """The nudge may be shown; settings are returned for template selection."""

    allowed: Literal[True] = True
    settings: UserEngagementSettings


class Denied(BaseModel):
    """The nudge must not be shown."""

    allowed: Literal[False] = False
    reason: DenyReason
    detail: Optional[str] = None
    until: Optional[datetime] = None


Decision = Union[Allowed, Denied]


class HistoryStatus(str, Enum):
    SHOWN = "shown"
    CLICKED = "clicked"
    DISMISSED = "dismissed"


class FeedbackTag(str, Enum):
    USEFUL = "useful"
    NOT_FIT = "not_fit"
    TOO_FREQUENT = "too_frequent"
    NOT_RELEVANT = "not_relevant"


class TriggerHistoryEntry(BaseModel):
    """A fired (not merely evaluated) trigger."""

    id: UUID
    user_id: UUID
    trigger_id: str
    channel: Channel
    template_id: str
    status: HistoryStatus = HistoryStatus.SHOWN
    feedback: Optional[FeedbackTag] = None
    action_taken: Optional[str] = None
    created_at: datetime


class EvaluateRequest(BaseModel):
    """Request body for asking the gate about one trigger on one channel."""

    trigger_id: str = Field(..., min_length=1, max_length=100)
    channel: Channel


class CommitRequest(BaseModel):
    """Request body for recording that an allowed nudge was actually shown."""

    trigger_id: str = Field(..., min_length=1, max_length=100)
    template_id: str = Field(..., min_length=1, max_length=200)
    channel: Channel
    budget_cost: int = Field(default=1, ge=0)
    cooldown_days: float = Field(default=0, ge=0)


class CommitResult(BaseModel):
    accepted: bool
    history_id: Optional[UUID] = None
    cooldown_until: Optional[datetime] = None
    remaining_day: Optional[int] = None
    remaining_week: Optional[int] = None


class FeedbackRequest(BaseModel):
    tag: FeedbackTag


class TriggerCandidate(BaseModel):
    """Advisory suggestion from the session tracker; still subject to the gate."""

    trigger_id: TriggerId
    reason: str


class TriggerStats(BaseModel):
    today: int
    week: int
    total: int
    clicked: int
    dismissed: int
