"""Models package exports."""

from guanzhao.models.engagement import (
    BudgetRemaining,
    BudgetScope,
    BudgetState,
    Channel,
    FrequencyLevel,
    SettingsUpdate,
    UserEngagementSettings,
)
from guanzhao.models.trigger import (
    Allowed,
    CommitRequest,
    CommitResult,
    Decision,
    Denied,
    DenyReason,
    FeedbackTag,
    TriggerHistoryEntry,
)

__all__ = [
    "Allowed",
    "BudgetRemaining",
    "BudgetScope",
    "BudgetState",
    "Channel",
    "CommitRequest",
    "CommitResult",
    "Decision",
    "Denied",
    "DenyReason",
    "FeedbackTag",
    "FrequencyLevel",
    "SettingsUpdate",
    "TriggerHistoryEntry",
    "UserEngagementSettings",
]
