"""
Job Runner - advances queued pipeline jobs one page at a time.

This module provides re-entrant, bounded runner passes with:
- Exclusive job claims (concurrent runners never process the same job)
- Per-pass time budgets
- Job-level failure capture with structured error records
- Batch finalization once every job is terminal
"""

import asyncio
from typing import Callable, Optional
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession
import logging

from core.config import settings
from core.database import async_session_maker as default_session_maker
from core.exceptions import (
    SyncException,
    ClaimConflictError,
    CredentialInvalidError,
    ProviderNotConnectedError,
)
from ingestion.adapters.registry import build_adapter
from ingestion.base import ProviderAdapter
from ingestion.enrichment import EmbeddingClient, build_embedding_client
from ingestion.job_store import JobStore
from ingestion.stages.stage import StageProcessor
from ingestion.stages.import_stage import ImportStage
from ingestion.stages.normalize_stage import NormalizeStage
from ingestion.stages.extract_stage import ExtractStage
from ingestion.stages.embed_stage import EmbedStage
from ingestion.stores import CredentialStore
from models.base import JobKind
from models.batch import SyncBatch
from models.job import SyncJob
from schemas.preferences import parse_preferences

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., ProviderAdapter]


class JobRunner:
    """
    Stateless runner invoked on demand or by the scheduler.

    Responsibilities:
    - List eligible jobs (queued, active batch, upstream completed)
    - Claim each job exclusively and run one page of its stage
    - Persist the outcome: re-enqueue, complete, or error
    - Finalize batches that became terminal

    Each job runs in its own session so one failing job never poisons the
    transaction of another.
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        embedder: Optional[EmbeddingClient] = None,
        max_jobs: Optional[int] = None,
        page_size: Optional[int] = None,
        max_items: Optional[int] = None,
        job_timeout: Optional[float] = None
    ):
        self.session_maker = session_maker or default_session_maker
        self.adapter_factory = adapter_factory or build_adapter
        self.embedder = embedder or build_embedding_client()
        self.max_jobs = max_jobs or settings.RUNNER_MAX_JOBS_PER_PASS
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.max_items = max_items or settings.SYNC_MAX_ITEMS_PER_BATCH
        self.job_timeout = job_timeout or settings.RUNNER_JOB_TIMEOUT_SECONDS

    async def run_pending(self) -> int:
        """
        Run one bounded pass over eligible jobs.

        Returns:
            Number of jobs advanced. Zero when nothing was eligible, in which
            case nothing was written beyond finalizing stranded batches.
        """
        async with self.session_maker() as session:
            store = JobStore(session)
            await store.finalize_stranded()
            eligible = await store.list_eligible(self.max_jobs)
            job_ids = [job.job_id for job in eligible]

        if not job_ids:
            logger.debug("No eligible jobs")
            return 0

        logger.info(f"Runner pass: {len(job_ids)} eligible job(s)")

        advanced = 0
        for job_id in job_ids:
            if await self._run_job(job_id):
                advanced += 1

        logger.info(f"Runner pass complete: {advanced} job(s) advanced")
        return advanced

    async def _run_job(self, job_id: str) -> bool:
        async with self.session_maker() as session:
            store = JobStore(session)

            try:
                job = await store.claim(job_id)
            except ClaimConflictError:
                logger.debug(f"Job {job_id} claimed elsewhere, skipping")
                return False

            batch_id = job.batch_id
            batch = await store.get_batch(batch_id)
            logger.info(
                f"Running {job.kind.value} job {job.job_id} "
                f"(batch {batch_id}, attempt {job.attempts})"
            )

            stage = None
            try:
                # --------------------------------------------------
                # Build and run one page of the stage
                # --------------------------------------------------
                stage = await self._build_stage(session, job, batch)
                exhausted = await asyncio.wait_for(stage.run(), timeout=self.job_timeout)
                await store.finish_pass(job, exhausted)

            except asyncio.TimeoutError:
                requeued = await store.requeue_after_timeout(job, settings.MAX_ITEM_ATTEMPTS)
                logger.warning(
                    f"{job.kind.value} job {job.job_id} timed out after {self.job_timeout}s "
                    f"({'requeued' if requeued else 'giving up'})"
                )

            except SyncException as e:
                logger.error(
                    f"{job.kind.value} job {job.job_id} failed: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                await store.fail_job(job, e)

            except Exception as e:
                error = SyncException(
                    f"Unexpected error in {job.kind.value} stage",
                    context={"job_id": job.job_id, "batch_id": batch_id},
                    original_exception=e
                )
                logger.exception(
                    f"{job.kind.value} job {job.job_id} crashed",
                    extra={"error_context": error.to_dict()}
                )
                await store.fail_job(job, error)

            finally:
                if stage is not None and isinstance(stage, ImportStage):
                    await stage.adapter.aclose()

            # A failed pass rolls back, which expires the loaded batch
            status = await store.finalize_if_terminal(batch_id)
            if status is not None:
                logger.info(f"Batch {batch_id} is {status.value}")

        return True

    async def _build_stage(self, session: AsyncSession, job: SyncJob, batch: SyncBatch) -> StageProcessor:
        common = {"page_size": self.page_size}

        if job.kind == JobKind.IMPORT:
            try:
                token = await CredentialStore(session).get_access_token(batch.user_id, batch.provider)
            except ProviderNotConnectedError as e:
                raise CredentialInvalidError(
                    "Provider connection was revoked",
                    context={"user_id": batch.user_id, "provider": batch.provider.value},
                    original_exception=e
                )
            adapter = self.adapter_factory(
                batch.provider,
                access_token=token,
                preferences=parse_preferences(batch.provider, batch.preferences_snapshot)
            )
            return ImportStage(session, job, batch, adapter=adapter, max_items=self.max_items, **common)

        if job.kind == JobKind.NORMALIZE:
            return NormalizeStage(session, job, batch, **common)
        if job.kind == JobKind.EXTRACT:
            return ExtractStage(session, job, batch, **common)
        if job.kind == JobKind.EMBED:
            return EmbedStage(session, job, batch, embedder=self.embedder, **common)

        raise ValueError(f"Unknown job kind: {job.kind}")
