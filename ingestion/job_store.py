"""
Job Store - durable batch and job state.

This module owns every state transition of batches and jobs:
- Batch creation with one queued job per pipeline stage
- Eligibility (queued, active batch, upstream completed)
- Exclusive claims via conditional UPDATE
- Per-pass outcome persistence and error records
- Batch terminal detection and finalization (watermark, lock release)
"""

from typing import List, Optional, Dict, Any, Iterable
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from sqlalchemy import select, update, and_, or_, func
from models.base import (
    Provider,
    JobKind,
    JobStatus,
    BatchStatus,
    ReasonCode,
    STAGE_ORDER,
    TERMINAL_JOB_STATUSES,
    upstream_of,
)
from models.batch import SyncBatch, new_token
from models.job import SyncJob
from models.raw_item import BatchItem
from models.error_record import ErrorRecord
from models.watermark import SyncWatermark
from ingestion.base import parse_timestamp
from ingestion.lock import SyncLockManager
from core.exceptions import ClaimConflictError, SyncException
import logging

logger = logging.getLogger(__name__)

# Stages whose failure never fails the batch
BEST_EFFORT_KINDS = (JobKind.EXTRACT, JobKind.EMBED)


def resolve_batch_status(jobs: Iterable[SyncJob]) -> Optional[BatchStatus]:
    """
    Terminal status a batch has reached, or None while it is still running.

    - failed: Import or Normalize ended in error
    - completed: every job is terminal and any errors are in best-effort
      stages (Extract, Embed)
    """
    jobs = list(jobs)
    for job in jobs:
        if job.status == JobStatus.ERROR and job.kind not in BEST_EFFORT_KINDS:
            return BatchStatus.FAILED

    if jobs and all(job.status in TERMINAL_JOB_STATUSES for job in jobs):
        return BatchStatus.COMPLETED

    return None


class JobStore:
    """
    Persistence of batches, jobs and error records.

    Every write goes through this class so the state machine
    queued -> running -> {queued, completed, error} is enforced in one place.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_batch(self, batch_id: str) -> Optional[SyncBatch]:
        result = await self.db.execute(select(SyncBatch).where(SyncBatch.batch_id == batch_id))
        return result.scalar_one_or_none()

    async def get_jobs(self, batch_id: str) -> List[SyncJob]:
        """Jobs of a batch in pipeline order"""
        result = await self.db.execute(select(SyncJob).where(SyncJob.batch_id == batch_id))
        jobs = result.scalars().all()
        return sorted(jobs, key=lambda j: STAGE_ORDER.index(j.kind))

    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        result = await self.db.execute(select(SyncJob).where(SyncJob.job_id == job_id))
        return result.scalar_one_or_none()

    async def get_watermark(self, user_id: str, provider: Provider) -> Optional[SyncWatermark]:
        result = await self.db.execute(
            select(SyncWatermark).where(
                and_(
                    SyncWatermark.user_id == user_id,
                    SyncWatermark.provider == Provider(provider)
                )
            )
        )
        return result.scalar_one_or_none()

    async def latest_batch(
        self,
        user_id: str,
        provider: Provider,
        status: Optional[BatchStatus] = None
    ) -> Optional[SyncBatch]:
        query = select(SyncBatch).where(
            and_(SyncBatch.user_id == user_id, SyncBatch.provider == Provider(provider))
        )
        if status is not None:
            query = query.where(SyncBatch.status == status)
        result = await self.db.execute(
            query.order_by(SyncBatch.created_at.desc(), SyncBatch.batch_id.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def count_batch_items(self, batch_id: str) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(BatchItem).where(BatchItem.batch_id == batch_id)
        )
        return result.scalar() or 0

    async def count_errored_items(self, batch_id: str) -> int:
        """Distinct items with a permanent error in the batch"""
        keyed = await self.db.execute(
            select(func.count(func.distinct(ErrorRecord.provider_item_id))).where(
                and_(
                    ErrorRecord.batch_id == batch_id,
                    ErrorRecord.permanent.is_(True),
                    ErrorRecord.provider_item_id.isnot(None)
                )
            )
        )
        unkeyed = await self.db.execute(
            select(func.count()).select_from(ErrorRecord).where(
                and_(
                    ErrorRecord.batch_id == batch_id,
                    ErrorRecord.permanent.is_(True),
                    ErrorRecord.provider_item_id.is_(None)
                )
            )
        )
        return (keyed.scalar() or 0) + (unkeyed.scalar() or 0)

    async def list_eligible(self, limit: int) -> List[SyncJob]:
        """
        Queued jobs of active batches whose upstream job is completed,
        oldest first.

        A best-effort upstream (Extract) that ended in error also releases
        its dependant: Embed reads processed records, not Extract output.
        """
        upstream = aliased(SyncJob)
        query = (
            select(SyncJob)
            .join(SyncBatch, SyncBatch.batch_id == SyncJob.batch_id)
            .outerjoin(
                upstream,
                and_(upstream.batch_id == SyncJob.batch_id, upstream.kind == SyncJob.depends_on)
            )
            .where(
                and_(
                    SyncJob.status == JobStatus.QUEUED,
                    SyncBatch.status == BatchStatus.ACTIVE,
                    or_(
                        SyncJob.depends_on.is_(None),
                        upstream.job_id.is_(None),
                        upstream.status == JobStatus.COMPLETED,
                        and_(upstream.status == JobStatus.ERROR, upstream.kind == JobKind.EXTRACT)
                    )
                )
            )
            .order_by(SyncJob.created_at.asc(), SyncBatch.created_at.asc(), SyncJob.job_id.asc())
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Batch creation
    # ------------------------------------------------------------------

    async def create_batch(
        self,
        user_id: str,
        provider: Provider,
        preferences_snapshot: Dict[str, Any],
        watermark_before: Optional[str],
        batch_id: Optional[str] = None,
        start_kind: JobKind = JobKind.IMPORT,
        retry_of_batch_id: Optional[str] = None,
        scope_item_ids: Optional[List[str]] = None,
        import_cursor: Optional[Dict[str, Any]] = None
    ) -> SyncBatch:
        """
        Add a batch and its queued jobs to the session. Does not commit.

        Jobs are created from start_kind onward; the first one has no
        dependency, each later one depends on its predecessor.
        """
        now = datetime.utcnow()
        batch = SyncBatch(
            batch_id=batch_id or new_token(),
            user_id=user_id,
            provider=Provider(provider),
            status=BatchStatus.ACTIVE,
            preferences_snapshot=preferences_snapshot or {},
            watermark_before=watermark_before,
            retry_of_batch_id=retry_of_batch_id,
            scope_item_ids=scope_item_ids,
            created_at=now
        )
        self.db.add(batch)
        await self.db.flush()

        kinds = STAGE_ORDER[STAGE_ORDER.index(start_kind):]
        for index, kind in enumerate(kinds):
            self.db.add(
                SyncJob(
                    job_id=new_token(),
                    batch_id=batch.batch_id,
                    kind=kind,
                    status=JobStatus.QUEUED,
                    depends_on=upstream_of(kind) if index > 0 else None,
                    cursor=dict(import_cursor) if kind == JobKind.IMPORT and import_cursor else {},
                    processed_items=0,
                    errored_items=0,
                    attempts=0,
                    created_at=now + timedelta(microseconds=index),
                    updated_at=now
                )
            )
        await self.db.flush()
        return batch

    async def link_items(self, batch_id: str, raw_item_ids: Iterable[int]) -> int:
        """Add raw items to a batch's input set, skipping existing links."""
        raw_item_ids = list(dict.fromkeys(raw_item_ids))
        if not raw_item_ids:
            return 0

        result = await self.db.execute(
            select(BatchItem.raw_item_id).where(
                and_(BatchItem.batch_id == batch_id, BatchItem.raw_item_id.in_(raw_item_ids))
            )
        )
        existing = set(result.scalars().all())

        linked = 0
        for raw_item_id in raw_item_ids:
            if raw_item_id in existing:
                continue
            self.db.add(BatchItem(batch_id=batch_id, raw_item_id=raw_item_id))
            linked += 1
        await self.db.flush()
        return linked

    # ------------------------------------------------------------------
    # Claims and pass outcomes
    # ------------------------------------------------------------------

    async def claim(self, job_id: str) -> SyncJob:
        """
        Atomically move a job from queued to running.

        Raises:
            ClaimConflictError: The job was claimed by someone else, left the
                queue, or its batch is no longer active
        """
        active_batches = select(SyncBatch.batch_id).where(SyncBatch.status == BatchStatus.ACTIVE)
        result = await self.db.execute(
            update(SyncJob)
            .where(
                and_(
                    SyncJob.job_id == job_id,
                    SyncJob.status == JobStatus.QUEUED,
                    SyncJob.batch_id.in_(active_batches)
                )
            )
            .values(
                status=JobStatus.RUNNING,
                attempts=SyncJob.attempts + 1,
                updated_at=datetime.utcnow()
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            await self.db.rollback()
            raise ClaimConflictError(
                "Job is not claimable",
                context={"job_id": job_id}
            )

        await self.db.commit()
        job = await self.get_job(job_id)
        await self.db.refresh(job)
        return job

    async def record_error(
        self,
        job: SyncJob,
        reason_code: ReasonCode,
        message: str,
        provider_item_id: Optional[str] = None,
        attempt: int = 1,
        permanent: bool = False
    ) -> ErrorRecord:
        """Append an error record for the job. Does not commit."""
        record = ErrorRecord(
            job_id=job.job_id,
            batch_id=job.batch_id,
            job_kind=job.kind,
            provider_item_id=provider_item_id,
            reason_code=ReasonCode(reason_code),
            message=(message or "")[:2000],
            attempt=attempt,
            permanent=permanent,
            created_at=datetime.utcnow()
        )
        self.db.add(record)
        return record

    async def finish_pass(self, job: SyncJob, exhausted: bool):
        """
        Persist a successful pass: re-enqueue, or complete when input is
        exhausted. The batch's lock is renewed in the same transaction.
        """
        if exhausted:
            job.status = JobStatus.COMPLETED
            if job.total_items is None:
                job.total_items = (job.processed_items or 0) + (job.errored_items or 0)
        else:
            job.status = JobStatus.QUEUED
        job.last_error = None
        job.updated_at = datetime.utcnow()
        await SyncLockManager(self.db).renew(job.batch_id)
        await self.db.commit()

    async def fail_job(self, job: SyncJob, error: SyncException):
        """
        Put a running job in error after a job-level failure.

        Partial work of the failed pass is rolled back; pages committed by
        earlier passes are kept.
        """
        await self.db.rollback()
        await self.db.refresh(job)

        job.status = JobStatus.ERROR
        job.last_error = str(error.message)[:2000]
        job.updated_at = datetime.utcnow()
        await self.record_error(
            job,
            reason_code=ReasonCode(error.reason_code),
            message=error.message,
            attempt=job.attempts or 1
        )
        await self.db.commit()

    async def requeue_after_timeout(self, job: SyncJob, max_attempts: int) -> bool:
        """
        Handle a pass that exceeded its time budget.

        The pass is rolled back and the job re-enqueued, unless it already
        timed out max_attempts times in a row. Returns True when requeued.
        """
        await self.db.rollback()
        await self.db.refresh(job)

        cursor = dict(job.cursor or {})
        timeouts = int(cursor.get("timeouts", 0)) + 1
        cursor["timeouts"] = timeouts
        job.cursor = cursor

        await self.record_error(
            job,
            reason_code=ReasonCode.TRANSIENT,
            message=f"{job.kind.value} pass timed out",
            attempt=timeouts
        )

        requeued = timeouts < max_attempts
        job.status = JobStatus.QUEUED if requeued else JobStatus.ERROR
        job.last_error = f"Timed out {timeouts} time(s)"
        job.updated_at = datetime.utcnow()
        await self.db.commit()
        return requeued

    async def requeue_stale(self, older_than_seconds: int) -> int:
        """
        Return running jobs whose runner disappeared to the queue.

        A job counts as stale when it has been running without an update for
        longer than older_than_seconds.
        """
        cutoff = datetime.utcnow() - timedelta(seconds=older_than_seconds)
        result = await self.db.execute(
            update(SyncJob)
            .where(and_(SyncJob.status == JobStatus.RUNNING, SyncJob.updated_at < cutoff))
            .values(status=JobStatus.QUEUED, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.warning(f"Requeued {result.rowcount} stale running job(s)")
        return result.rowcount

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def finalize_if_terminal(self, batch_id: str) -> Optional[BatchStatus]:
        """
        Finalize the batch when its jobs have reached a terminal state.

        Finalization is a conditional UPDATE on the batch status, so when two
        runners race only one commits the watermark and releases the lock.
        """
        batch = await self.get_batch(batch_id)
        if batch is None or batch.status != BatchStatus.ACTIVE:
            return None

        jobs = await self.get_jobs(batch_id)
        status = resolve_batch_status(jobs)
        if status is None:
            return None

        now = datetime.utcnow()
        result = await self.db.execute(
            update(SyncBatch)
            .where(and_(SyncBatch.batch_id == batch_id, SyncBatch.status == BatchStatus.ACTIVE))
            .values(status=status, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            return None

        if status == BatchStatus.COMPLETED and not batch.is_retry:
            import_job = next((j for j in jobs if j.kind == JobKind.IMPORT), None)
            if import_job is not None and (import_job.errored_items or 0) == 0:
                await self._commit_watermark(batch, import_job, now)
            else:
                logger.info(f"Batch {batch_id} completed with import errors; watermark unchanged")

        await SyncLockManager(self.db).release(batch.user_id, batch.provider, batch_id)
        await self.db.commit()
        await self.db.refresh(batch)

        logger.info(f"Batch {batch_id} finalized as {status.value}")
        return status

    async def finalize_stranded(self) -> int:
        """
        Finalize active batches that reached a terminal state without being
        finalized (a runner died between a job's last pass and finalization).

        Candidates are active batches with no queued or running job, or with
        a failed Import/Normalize job. Returns the number finalized.
        """
        pending = select(SyncJob.job_id).where(
            and_(
                SyncJob.batch_id == SyncBatch.batch_id,
                SyncJob.status.in_((JobStatus.QUEUED, JobStatus.RUNNING))
            )
        )
        failed_core = select(SyncJob.job_id).where(
            and_(
                SyncJob.batch_id == SyncBatch.batch_id,
                SyncJob.status == JobStatus.ERROR,
                SyncJob.kind.notin_(BEST_EFFORT_KINDS)
            )
        )
        result = await self.db.execute(
            select(SyncBatch.batch_id).where(
                and_(
                    SyncBatch.status == BatchStatus.ACTIVE,
                    or_(~pending.exists(), failed_core.exists())
                )
            )
        )
        batch_ids = list(result.scalars().all())

        finalized = 0
        for batch_id in batch_ids:
            status = await self.finalize_if_terminal(batch_id)
            if status is not None:
                finalized += 1
                logger.warning(f"Finalized stranded batch {batch_id} as {status.value}")
        return finalized

    async def _commit_watermark(self, batch: SyncBatch, import_job: SyncJob, now: datetime):
        """Advance the watermark to max(previous, candidate)."""
        candidate = (import_job.cursor or {}).get("watermark_candidate")
        watermark = await self.get_watermark(batch.user_id, batch.provider)

        if watermark is None:
            watermark = SyncWatermark(user_id=batch.user_id, provider=batch.provider, created_at=now)
            self.db.add(watermark)

        previous = parse_timestamp(watermark.watermark_value)
        proposed = parse_timestamp(candidate)
        if proposed is not None and (previous is None or proposed > previous):
            watermark.watermark_value = proposed.isoformat()

        watermark.last_batch_id = batch.batch_id
        watermark.last_synced_at = now
        watermark.updated_at = now

        logger.info(
            f"Watermark for {batch.user_id}/{batch.provider.value} "
            f"is now {watermark.watermark_value}"
        )
