"""Health endpoint."""

from datetime import datetime, timezone

from fastapi import APIRouter

from guanzhao.database import health_check as db_health_check
from guanzhao.services.redis_service import get_redis

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Report service, database and cache health.

    Returns:
        Status and timestamp in ISO8601 format
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        db_healthy = await db_health_check()
        health_status["database"] = "healthy" if db_healthy else "unhealthy"
    except Exception:
        health_status["database"] = "unavailable"

    redis_client = await get_redis()
    health_status["redis"] = "healthy" if redis_client else "unavailable"

    return health_status
