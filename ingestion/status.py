"""
Status Aggregator - read-only view of sync state for polling clients.
"""

import asyncio
from typing import Optional, Dict, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import OperationalError
from sqlalchemy import select, and_, func
from models.base import Provider, JobKind, JobStatus, BatchStatus, ReasonCode
from models.batch import SyncBatch
from models.job import SyncJob
from models.error_record import ErrorRecord
from ingestion.job_store import JobStore
from ingestion.retry import RetryService
from ingestion.stores import CredentialStore, PreferenceStore
from schemas.api import (
    StatusView,
    ProviderStatus,
    BatchView,
    JobProgress,
    KindCounts,
    LastSync,
)
from core.config import settings
import logging

logger = logging.getLogger(__name__)

BATCH_STATES = {
    BatchStatus.ACTIVE: "syncing",
    BatchStatus.COMPLETED: "completed",
    BatchStatus.FAILED: "failed",
    BatchStatus.EXPIRED: "expired",
}


class StatusAggregator:
    """
    Builds StatusView and BatchView snapshots.

    Pure read: safe to call while runners are mutating jobs. Reads that hit
    a locked or briefly unavailable database are retried with a short
    backoff instead of surfacing as errors.
    """

    def __init__(self, db_session: AsyncSession, read_attempts: int = 5, retry_delay: float = 0.05):
        self.db = db_session
        self.job_store = JobStore(db_session)
        self.read_attempts = read_attempts
        self.retry_delay = retry_delay

    async def get_status(self, user_id: str) -> StatusView:
        return await self._with_read_retry(self._build_status, user_id)

    async def get_batch_view(self, batch_id: str, user_id: Optional[str] = None) -> Optional[BatchView]:
        async def build():
            batch = await self.job_store.get_batch(batch_id)
            if batch is None or (user_id is not None and batch.user_id != user_id):
                return None
            return await self._batch_view(batch)
        return await self._with_read_retry(build)

    async def _with_read_retry(self, func_, *args):
        for attempt in range(self.read_attempts):
            try:
                return await func_(*args)
            except OperationalError as e:
                await self.db.rollback()
                if attempt == self.read_attempts - 1:
                    raise
                delay = self.retry_delay * (2 ** attempt)
                logger.debug(f"Status read failed ({e.orig}); retrying in {delay}s")
                await asyncio.sleep(delay)

    async def _build_status(self, user_id: str) -> StatusView:
        credentials = CredentialStore(self.db)
        preferences = PreferenceStore(self.db)

        providers: Dict[str, ProviderStatus] = {}
        is_syncing = False

        for provider in Provider:
            watermark = await self.job_store.get_watermark(user_id, provider)
            active = await self.job_store.latest_batch(user_id, provider, status=BatchStatus.ACTIVE)
            latest = await self.job_store.latest_batch(user_id, provider)

            last_sync = None
            if watermark is not None:
                last_sync = LastSync(
                    watermark=watermark.watermark_value,
                    synced_at=watermark.last_synced_at,
                    batch_id=watermark.last_batch_id
                )

            providers[provider.value] = ProviderStatus(
                provider=provider,
                connected=await credentials.is_connected(user_id, provider),
                scopes=await credentials.get_scopes(user_id, provider),
                last_sync=last_sync,
                preferences_locked=await preferences.is_locked(user_id, provider),
                active_batch=await self._batch_view(active) if active else None,
                latest_batch=await self._batch_view(latest) if latest else None
            )
            is_syncing = is_syncing or active is not None

        return StatusView(
            user_id=user_id,
            providers=providers,
            job_counts=await self._job_counts(user_id),
            is_syncing=is_syncing,
            poll_interval_seconds=(
                settings.ACTIVE_POLL_INTERVAL_SECONDS if is_syncing else settings.IDLE_POLL_INTERVAL_SECONDS
            )
        )

    async def _job_counts(self, user_id: str) -> Dict[str, KindCounts]:
        """Per-kind {queued, done, error} across all of the user's batches."""
        result = await self.db.execute(
            select(SyncJob.kind, SyncJob.status, func.count())
            .join(SyncBatch, SyncBatch.batch_id == SyncJob.batch_id)
            .where(SyncBatch.user_id == user_id)
            .group_by(SyncJob.kind, SyncJob.status)
        )

        counts = {kind.value: KindCounts() for kind in JobKind}
        for kind, status, count in result.all():
            bucket = counts[JobKind(kind).value]
            if status in (JobStatus.QUEUED, JobStatus.RUNNING):
                bucket.queued += count
            elif status == JobStatus.COMPLETED:
                bucket.done += count
            elif status == JobStatus.ERROR:
                bucket.error += count
        return counts

    async def _batch_view(self, batch: SyncBatch) -> BatchView:
        jobs = await self.job_store.get_jobs(batch.batch_id)
        error_count = await self.job_store.count_errored_items(batch.batch_id)

        return BatchView(
            batch_id=batch.batch_id,
            provider=batch.provider,
            status=batch.status,
            state=BATCH_STATES[batch.status],
            error_count=error_count,
            is_retry=batch.is_retry,
            retry_of_batch_id=batch.retry_of_batch_id,
            actions=await self._actions(batch, jobs),
            created_at=batch.created_at,
            completed_at=batch.completed_at,
            jobs=[self._job_progress(job) for job in jobs]
        )

    async def _actions(self, batch: SyncBatch, jobs: List[SyncJob]) -> List[str]:
        """
        User actions offered for a batch: reconnect and/or retry.

        Retry is offered only when retry_failed would accept it: some job
        ended in error, or some item has a keyed permanent error.
        """
        if batch.status == BatchStatus.ACTIVE:
            return []

        actions = []
        if batch.status == BatchStatus.FAILED:
            result = await self.db.execute(
                select(func.count()).select_from(ErrorRecord).where(
                    and_(
                        ErrorRecord.batch_id == batch.batch_id,
                        ErrorRecord.reason_code == ReasonCode.CREDENTIAL_INVALID
                    )
                )
            )
            if (result.scalar() or 0) > 0:
                actions.append("reconnect")

        if any(job.status == JobStatus.ERROR for job in jobs):
            actions.append("retry")
        elif await RetryService(self.db).errored_items(batch.batch_id):
            actions.append("retry")
        return actions

    @staticmethod
    def _job_progress(job: SyncJob) -> JobProgress:
        return JobProgress(
            job_id=job.job_id,
            kind=job.kind,
            status=job.status,
            depends_on=job.depends_on,
            total_items=job.total_items,
            processed_items=job.processed_items or 0,
            errored_items=job.errored_items or 0,
            progress_percentage=job.progress_percentage,
            updated_at=job.updated_at
        )
