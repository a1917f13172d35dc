"""FastAPI application for the Guanzhao engagement engine."""

from contextlib import asynccontextmanager
from uuid import uuid4

from dotenv import load_dotenv

# Load environment variables before anything else
load_dotenv()

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from guanzhao.api.actions import router as actions_router
from guanzhao.api.middleware import CorrelationIdMiddleware
from guanzhao.api.routes import router as health_router
from guanzhao.api.sessions import router as sessions_router
from guanzhao.api.settings import router as settings_router
from guanzhao.api.triggers import router as triggers_router
from guanzhao.config import get_settings
from guanzhao.database import close_database, init_database, run_migrations
from guanzhao.services.logging_service import configure_logging, get_logger
from guanzhao.services.redis_service import close_redis, get_redis


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the Postgres pool (running migrations) and Redis on startup."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger = get_logger("main")

    # Postgres is the source of truth; without it the engine cannot answer.
    await init_database()
    await run_migrations()
    logger.info("database_initialized")

    # Redis only backs the settings cache
    if await get_redis() is None:
        logger.warning(
            "redis_unavailable",
            note="Continuing without the settings cache - evaluate reads go to Postgres",
        )

    logger.info("application_started", log_level=settings.log_level)

    yield

    await close_database()
    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title="Guanzhao - Proactive Engagement API",
    description="Admission control for proactive nudges: gate, budgets, cooldowns and feedback",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return 400 with the first validation problem and the correlation id."""
    correlation_id = getattr(request.state, "correlation_id", None) or str(uuid4())
    logger = structlog.get_logger()

    errors = exc.errors()
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", ["unknown"]))
        message = first_error.get("msg", "Validation failed")
        detail = f"Field '{field}': {message}"
    else:
        detail = "Request validation failed"

    logger.warning("validation_error", detail=detail)

    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation error",
            "detail": detail,
            "correlation_id": correlation_id,
        },
        headers={"X-Correlation-Id": correlation_id},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(CorrelationIdMiddleware)

app.include_router(sessions_router)
app.include_router(triggers_router)
app.include_router(settings_router)
app.include_router(actions_router)
app.include_router(health_router)
