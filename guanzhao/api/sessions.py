"""Chat session lifecycle endpoints."""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from guanzhao.api.dependencies import get_current_user_id
from guanzhao.models.session import SessionEventRequest
from guanzhao.services.errors import NotFoundError
from guanzhao.services.session_service import SessionService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/guanzhao", tags=["Guanzhao Sessions"])


def _session_payload(session) -> dict:
    data = session.model_dump(mode="json")
    data["state"] = session.state.value
    return data


@router.post("/session")
async def session_event(
    body: SessionEventRequest,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """Report a session start, activity tick or end.

    The response may carry ``should_trigger``, a candidate the client should
    pass to ``/guanzhao/trigger/evaluate`` before showing anything.
    """
    service = SessionService()
    try:
        result = await service.handle_event(user_id, body)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")

    return result.model_dump(mode="json")


@router.get("/sessions")
async def list_sessions(
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
) -> dict:
    service = SessionService()
    sessions = await service.list_sessions(user_id, limit=limit)
    return {"items": [_session_payload(s) for s in sessions], "limit": limit}


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: UUID,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    service = SessionService()
    try:
        session = await service.get_session(user_id, session_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")

    return _session_payload(session)
