"""
JTD Pipeline - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import JSONResponse

from jtd_pipeline import __version__
from jtd_pipeline.core.config import settings
from jtd_pipeline.core.logging import setup_logging, get_logger
from jtd_pipeline.core.middleware import setup_middleware, setup_exception_handlers
from jtd_pipeline.api.routes import router as api_router
from jtd_pipeline.db.database import AsyncSessionLocal, create_tables, engine, ping

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "JTD", "description": "Job creation, delivery status and provider receipts."},
    {
        "name": "Admin JTD",
        "description": "Event explorer, queue monitor and recovery actions (retry, cancel, "
                       "force-complete, DLQ requeue and purge).",
    },
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version=__version__,
    description="Durable notification delivery pipeline with dead-letter recovery.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

if not allowed_origins and settings.DEBUG:
    allowed_origins = ["http://localhost:3000", "http://127.0.0.1:3000"]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Admin-API-Key", "X-Admin-Name"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await create_tables(engine)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    logger.info("Shutting down application")
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up. Dependencies are not checked.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description="Checks the database round-trip; 503 with status=degraded when it fails.",
    responses={503: {"description": "Database unavailable"}},
    tags=["Health"],
)
async def readiness_check():
    try:
        async with AsyncSessionLocal() as session:
            await ping(session)
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Readiness check failed", extra_data={"error": str(exc)})
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": f"error: {type(exc).__name__}"},
        )
    return {"status": "healthy", "db": "ok"}
