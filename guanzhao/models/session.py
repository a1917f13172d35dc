"""Chat session lifecycle models."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from guanzhao.models.engagement import validate_timezone
from guanzhao.models.trigger import TriggerCandidate


class SessionEventKind(str, Enum):
    START = "start"
    CONTINUE = "continue"
    END = "end"


class SessionState(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class SessionRecord(BaseModel):
    """One chat session as seen by the engine."""

    id: UUID
    user_id: UUID
    timezone: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    last_activity_at: datetime
    messages_count: int = 0

    @property
    def state(self) -> SessionState:
        return SessionState.ACTIVE if self.ended_at is None else SessionState.ENDED


class SessionEventRequest(BaseModel):
    """A session start, activity tick or end reported by the chat surface."""

    kind: SessionEventKind
    session_id: Optional[UUID] = None
    timezone: Optional[str] = None
    messages_count: Optional[int] = Field(default=None, ge=0)

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: Optional[str]) -> Optional[str]:
        return validate_timezone(value)

    @model_validator(mode="after")
    def check_session_id(self) -> "SessionEventRequest":
        if self.kind != SessionEventKind.START and self.session_id is None:
            raise ValueError(f"session_id is required for '{self.kind.value}' events")
        return self


class SessionEventResult(BaseModel):
    success: bool = True
    session_id: Optional[UUID] = None
    should_trigger: Optional[TriggerCandidate] = None
