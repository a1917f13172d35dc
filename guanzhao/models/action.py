"""Action button models."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ActionRequest(BaseModel):
    """A button pressed on a shown nudge (or from the settings surface)."""

    action: str = Field(..., min_length=1, max_length=100)
    trigger_history_id: Optional[UUID] = None


class ActionResult(BaseModel):
    success: bool
    message: Optional[str] = None
    redirect_url: Optional[str] = None
