"""Engagement settings and budget endpoints."""

import structlog
from fastapi import APIRouter, Depends

from guanzhao.api.dependencies import get_current_user_id
from guanzhao.models.engagement import SettingsUpdate
from guanzhao.services.budget_service import BudgetService
from guanzhao.services.settings_service import SettingsService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/guanzhao", tags=["Guanzhao Settings"])


@router.get("/settings")
async def get_engagement_settings(
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """Current settings, or the defaults if the user never changed anything."""
    service = SettingsService()
    settings = await service.get_effective_settings(user_id)
    return settings.model_dump(mode="json")


@router.patch("/settings")
async def update_engagement_settings(
    body: SettingsUpdate,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """Partially update settings; only fields present in the body are written."""
    service = SettingsService()
    settings = await service.update_settings(user_id, body)
    return settings.model_dump(mode="json")


@router.post("/settings/reset")
async def reset_engagement_settings(
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """Restore defaults (timezone kept) and zero all budget counters."""
    service = SettingsService()
    settings = await service.reset(user_id)
    return settings.model_dump(mode="json")


@router.get("/budget")
async def get_budget(
    user_id: str = Depends(get_current_user_id),
) -> dict:
    service = BudgetService()
    remaining = await service.check_remaining(user_id)
    return remaining.model_dump()
