"""
Sync endpoints: start, run, poll, inspect errors, retry
"""

from fastapi import APIRouter, Depends, Query, Request, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from api.dependencies import get_db, get_current_user_id, get_runner
from ingestion.orchestrator import SyncOrchestrator
from ingestion.retry import RetryService
from ingestion.runner import JobRunner
from ingestion.status import StatusAggregator
from models.base import Provider, JobKind
from schemas.api import (
    StartSyncResponse,
    RunPendingResponse,
    StatusView,
    BatchView,
    ErrorSummary,
    RetryResponse,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Sync"])


@router.post("/sync/{provider}", response_model=StartSyncResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_sync(
    provider: Provider,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """
    Queue a sync for the caller and provider.

    The work happens in later runner passes; poll /sync/status for progress.
    Returns 409 already_syncing while another batch holds the lock.
    """
    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] POST /sync/{provider.value} user={user_id}")

    batch_id = await SyncOrchestrator(db).start_sync(user_id, provider)
    return StartSyncResponse(batch_id=batch_id, provider=provider)


@router.post("/jobs/run", response_model=RunPendingResponse)
async def run_jobs(runner: JobRunner = Depends(get_runner)):
    """Run one bounded runner pass (cron or manual trigger)."""
    processed = await runner.run_pending()
    return RunPendingResponse(processed_count=processed)


@router.get("/sync/status", response_model=StatusView)
async def sync_status(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """
    Polling endpoint.

    poll_interval_seconds tells the client how soon to ask again: short
    while a batch is active, long otherwise.
    """
    return await StatusAggregator(db).get_status(user_id)


@router.get("/sync/batches/{batch_id}", response_model=BatchView)
async def get_batch(
    batch_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    view = await StatusAggregator(db).get_batch_view(batch_id, user_id=user_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    return view


@router.get("/sync/batches/{batch_id}/errors", response_model=ErrorSummary)
async def get_batch_errors(
    batch_id: str,
    limit: int = Query(20, ge=1, le=200, description="Number of recent error records"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await RetryService(db).get_error_summary(batch_id, user_id=user_id, recent_limit=limit)


@router.post(
    "/sync/batches/{batch_id}/retry",
    response_model=RetryResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def retry_batch(
    batch_id: str,
    kind: Optional[JobKind] = Query(None, description="Only retry items that failed in this stage"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Create a new batch scoped to the errored items of batch_id."""
    new_batch_id = await RetryService(db).retry_failed(batch_id, kind=kind, user_id=user_id)
    return RetryResponse(batch_id=new_batch_id, retry_of_batch_id=batch_id)
