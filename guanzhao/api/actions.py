"""Action button endpoint."""

import structlog
from fastapi import APIRouter, Depends, HTTPException

from guanzhao.api.dependencies import get_current_user_id
from guanzhao.models.action import ActionRequest
from guanzhao.services.action_service import ActionService
from guanzhao.services.errors import NotFoundError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/guanzhao", tags=["Guanzhao Actions"])


@router.post("/actions")
async def dispatch_action(
    body: ActionRequest,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    service = ActionService()
    try:
        result = await service.dispatch(user_id, body.action, body.trigger_history_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Trigger history entry not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return result.model_dump()
