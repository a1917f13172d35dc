"""Trigger gate, commit, feedback, history and cooldown endpoints."""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from guanzhao.api.dependencies import get_current_user_id
from guanzhao.models.engagement import Channel
from guanzhao.models.trigger import CommitRequest, EvaluateRequest, FeedbackRequest
from guanzhao.services.cooldown_service import CooldownService
from guanzhao.services.errors import BudgetExceededError, ConfigurationError, NotFoundError
from guanzhao.services.trigger_service import TriggerService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/guanzhao/trigger", tags=["Guanzhao Triggers"])


@router.post("/evaluate")
async def evaluate_trigger(
    body: EvaluateRequest,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """Ask whether a trigger may be shown on a channel right now.

    A denial is a normal 200 response with ``allowed: false`` and a reason.
    """
    service = TriggerService()
    decision = await service.evaluate(user_id, body.trigger_id, body.channel)
    return decision.model_dump(mode="json")


@router.post("/commit")
async def commit_trigger(
    body: CommitRequest,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """Record that an allowed nudge was shown: budget, history and cooldown."""
    service = TriggerService()
    try:
        result = await service.commit_firing(user_id, body)
    except BudgetExceededError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "BudgetExceeded",
                "channel": e.channel,
                "remaining_day": e.remaining_day,
                "remaining_week": e.remaining_week,
            },
        )
    except ConfigurationError as e:
        logger.error("trigger_commit_misconfigured", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "SettingsNotFound"},
        )

    return result.model_dump(mode="json")


@router.post("/history/{history_id}/feedback")
async def record_feedback(
    history_id: UUID,
    body: FeedbackRequest,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    service = TriggerService()
    try:
        entry = await service.record_feedback(user_id, history_id, body.tag)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Trigger history entry not found")

    return entry.model_dump(mode="json")


@router.get("/history")
async def list_history(
    trigger_id: Optional[str] = Query(default=None, description="Filter by trigger"),
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """Most recently fired triggers first."""
    service = TriggerService()
    entries = await service.list_history(user_id, trigger_id=trigger_id, limit=limit)
    return {
        "items": [entry.model_dump(mode="json") for entry in entries],
        "limit": limit,
    }


@router.get("/{trigger_id}/stats")
async def trigger_stats(
    trigger_id: str,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    service = TriggerService()
    stats = await service.trigger_stats(user_id, trigger_id)
    return stats.model_dump()


@router.get("/{trigger_id}/recent-templates")
async def recent_templates(
    trigger_id: str,
    limit: int = Query(default=5, ge=1, le=50),
    user_id: str = Depends(get_current_user_id),
) -> dict:
    service = TriggerService()
    templates = await service.recently_used_templates(user_id, trigger_id, limit=limit)
    return {"trigger_id": trigger_id, "template_ids": templates}


@router.get("/{trigger_id}/cooldown")
async def get_cooldown(
    trigger_id: str,
    channel: Channel = Query(default=Channel.IN_APP),
    user_id: str = Depends(get_current_user_id),
) -> dict:
    service = CooldownService()
    until = await service.get_cooldown_until(user_id, trigger_id, channel)
    return {
        "trigger_id": trigger_id,
        "channel": channel.value,
        "on_cooldown": until is not None,
        "cooldown_until": until.isoformat() if until else None,
    }


@router.delete("/{trigger_id}/cooldown")
async def clear_cooldown(
    trigger_id: str,
    channel: Channel = Query(default=Channel.IN_APP),
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """Make a trigger available again on a channel before its cooldown runs out."""
    service = CooldownService()
    cleared = await service.clear_cooldown(user_id, trigger_id, channel)
    return {"trigger_id": trigger_id, "channel": channel.value, "cleared": cleared}
