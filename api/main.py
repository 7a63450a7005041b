"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, sync, preferences
from core.config import settings
from core.exceptions import (
    SyncException,
    PreconditionError,
    AlreadySyncingError,
    BatchNotFoundError,
    PreferencesMissingError,
)
from core.logging import setup_logging
import logging
import re
from api.middleware import RequestContextMiddleware
from ingestion.scheduler import SyncScheduler
from schemas.api import ErrorResponse

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Provider Sync API",
    description="Resumable sync of mail and calendar providers into processed records",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

scheduler = SyncScheduler()


app.include_router(health.router)
app.include_router(sync.router)
app.include_router(preferences.router)


def _error_code(exc: SyncException) -> str:
    """AlreadySyncingError -> already_syncing"""
    name = type(exc).__name__
    if name.endswith("Error"):
        name = name[:-len("Error")]
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _status_code(exc: SyncException) -> int:
    if isinstance(exc, BatchNotFoundError):
        return 404
    if isinstance(exc, PreferencesMissingError):
        return 422
    if isinstance(exc, PreconditionError):
        return 409
    return 500


@app.exception_handler(SyncException)
async def sync_exception_handler(request: Request, exc: SyncException):
    status_code = _status_code(exc)
    request_id = getattr(request.state, "request_id", None)

    if status_code >= 500:
        logger.error(
            f"[{request_id}] {request.method} {request.url.path} failed: {exc}",
            extra={"error_context": exc.to_dict()}
        )
    else:
        logger.info(f"[{request_id}] {request.method} {request.url.path} rejected: {exc.message}")

    context = {k: v for k, v in exc.context.items() if k != "error_timestamp"}
    if isinstance(exc, AlreadySyncingError) and exc.active_batch_id:
        context["active_batch_id"] = exc.active_batch_id

    body = ErrorResponse(error=_error_code(exc), detail=exc.message, context=context)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Provider Sync API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Provider Sync API")
    if scheduler.scheduler.running:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Provider Sync API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "start_sync": "/sync/{provider}",
            "status": "/sync/status",
            "run_jobs": "/jobs/run",
            "preferences": "/preferences/{provider}"
        }
    }
