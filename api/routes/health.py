"""
Health check endpoint with database and pipeline status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select, text, func, and_
from api.dependencies import get_db
from schemas.api import HealthCheckResponse
from models.base import JobStatus, BatchStatus
from models.batch import SyncBatch
from models.job import SyncJob
from core.config import settings
from datetime import datetime, timedelta
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Active batches and queued jobs
    - Jobs stuck in running longer than the stale threshold (degraded)
    """
    db_connected = False
    active_batches = 0
    queued_jobs = 0
    stuck_jobs = 0

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")

    if db_connected:
        try:
            active_batches = (await db.execute(
                select(func.count()).select_from(SyncBatch).where(SyncBatch.status == BatchStatus.ACTIVE)
            )).scalar() or 0
            queued_jobs = (await db.execute(
                select(func.count()).select_from(SyncJob).where(SyncJob.status == JobStatus.QUEUED)
            )).scalar() or 0

            cutoff = datetime.utcnow() - timedelta(seconds=settings.STALE_JOB_SECONDS)
            stuck_jobs = (await db.execute(
                select(func.count()).select_from(SyncJob).where(
                    and_(SyncJob.status == JobStatus.RUNNING, SyncJob.updated_at < cutoff)
                )
            )).scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to read pipeline counters: {str(e)}")

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        active_batches=active_batches,
        queued_jobs=queued_jobs,
        stuck_jobs=stuck_jobs
    )
