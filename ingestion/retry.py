"""
Error & Retry subsystem.

Summarizes what went wrong in a batch and creates retry batches scoped to
exactly the items that failed. Terminal jobs are never reopened; a retry is
always a new batch with fresh jobs, subject to the same sync lock.
"""

from typing import List, Optional, Dict
from collections import Counter
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_
from models.base import JobKind, JobStatus, STAGE_ORDER
from models.batch import SyncBatch
from models.error_record import ErrorRecord
from models.raw_item import RawItem, BatchItem
from ingestion.job_store import JobStore
from ingestion.orchestrator import SyncOrchestrator
from ingestion.stores import CredentialStore
from schemas.api import ErrorSummary, ErrorDetail
from core.exceptions import (
    BatchNotFoundError,
    NothingToRetryError,
    ProviderNotConnectedError,
)
import logging

logger = logging.getLogger(__name__)


class RetryService:
    """
    Error summaries and selective retry for sync batches.

    Usage:
        service = RetryService(session)
        summary = await service.get_error_summary(batch_id)
        new_batch_id = await service.retry_failed(batch_id)
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session
        self.job_store = JobStore(db_session)

    async def get_batch(self, batch_id: str, user_id: Optional[str] = None) -> SyncBatch:
        batch = await self.job_store.get_batch(batch_id)
        if batch is None or (user_id is not None and batch.user_id != user_id):
            raise BatchNotFoundError("Batch not found", context={"batch_id": batch_id})
        return batch

    async def errored_items(self, batch_id: str, kind: Optional[JobKind] = None) -> Dict[str, ErrorRecord]:
        """Latest permanent error per provider item id (items without an id excluded)."""
        query = select(ErrorRecord).where(
            and_(
                ErrorRecord.batch_id == batch_id,
                ErrorRecord.permanent.is_(True),
                ErrorRecord.provider_item_id.isnot(None)
            )
        )
        if kind is not None:
            query = query.where(ErrorRecord.job_kind == JobKind(kind))

        result = await self.db.execute(query.order_by(ErrorRecord.created_at.asc(), ErrorRecord.id.asc()))
        latest: Dict[str, ErrorRecord] = {}
        for record in result.scalars().all():
            latest[record.provider_item_id] = record
        return latest

    async def get_error_summary(
        self,
        batch_id: str,
        user_id: Optional[str] = None,
        recent_limit: int = 20
    ) -> ErrorSummary:
        """
        Count and breakdown of permanently errored items.

        Breakdowns use each item's latest reason code and stage. Unkeyed
        permanent errors (items without an id) count once each.
        """
        await self.get_batch(batch_id, user_id)

        result = await self.db.execute(
            select(ErrorRecord)
            .where(and_(ErrorRecord.batch_id == batch_id, ErrorRecord.permanent.is_(True)))
            .order_by(ErrorRecord.created_at.asc(), ErrorRecord.id.asc())
        )
        latest: Dict[str, ErrorRecord] = {}
        unkeyed: List[ErrorRecord] = []
        for record in result.scalars().all():
            if record.provider_item_id is None:
                unkeyed.append(record)
            else:
                latest[record.provider_item_id] = record

        items = list(latest.values()) + unkeyed
        reasons = Counter(r.reason_code.value for r in items)
        stages = Counter(r.job_kind.value for r in items)

        recent_result = await self.db.execute(
            select(ErrorRecord)
            .where(ErrorRecord.batch_id == batch_id)
            .order_by(ErrorRecord.created_at.desc(), ErrorRecord.id.desc())
            .limit(recent_limit)
        )
        recent = [
            ErrorDetail(
                provider_item_id=r.provider_item_id,
                job_kind=r.job_kind,
                reason_code=r.reason_code.value,
                message=r.message,
                attempt=r.attempt,
                created_at=r.created_at
            )
            for r in recent_result.scalars().all()
        ]

        return ErrorSummary(
            batch_id=batch_id,
            count=len(items),
            reason_breakdown=dict(reasons),
            stage_breakdown=dict(stages),
            recent=recent
        )

    async def retry_failed(
        self,
        batch_id: str,
        kind: Optional[JobKind] = None,
        user_id: Optional[str] = None
    ) -> str:
        """
        Create a retry batch for the failures of batch_id.

        - A batch whose Import failed is retried as a fresh regular sync
          from the unchanged watermark
        - Otherwise the new batch starts at the earliest failed stage and is
          scoped to the errored items; items that failed after Import are
          linked without re-fetching, Import failures are re-fetched by id
        - A stage that failed as a whole (job-level) puts every item of the
          original batch back in scope from that stage on

        Raises:
            BatchNotFoundError: Unknown batch (or another user's)
            NothingToRetryError: No errored items (for the given kind)
            AlreadySyncingError: Another batch holds the lock
        """
        batch = await self.get_batch(batch_id, user_id)
        kind = JobKind(kind) if kind is not None else None
        jobs = await self.job_store.get_jobs(batch_id)

        import_job = next((j for j in jobs if j.kind == JobKind.IMPORT), None)
        if import_job is not None and import_job.status == JobStatus.ERROR and kind in (None, JobKind.IMPORT):
            logger.info(f"Batch {batch_id} failed at import; retrying as a fresh sync")
            return await SyncOrchestrator(self.db).start_sync(batch.user_id, batch.provider)

        errors = await self.errored_items(batch_id, kind)
        failed_stages = [
            j.kind for j in jobs
            if j.status == JobStatus.ERROR and j.kind != JobKind.IMPORT and kind in (None, j.kind)
        ]

        stage_of = {item_id: record.job_kind for item_id, record in errors.items()}
        if failed_stages:
            for item_id in await self._batch_item_ids(batch):
                stage_of.setdefault(item_id, min(failed_stages, key=STAGE_ORDER.index))

        if not stage_of:
            raise NothingToRetryError(
                "Batch has no errored items to retry",
                context={"batch_id": batch_id, "kind": kind.value if kind else None}
            )

        start_kind = min(stage_of.values(), key=STAGE_ORDER.index)
        fetch_ids = sorted(i for i, k in stage_of.items() if k == JobKind.IMPORT)
        linked_ids = sorted(i for i, k in stage_of.items() if k != JobKind.IMPORT)

        if fetch_ids and not await CredentialStore(self.db).is_connected(batch.user_id, batch.provider):
            raise ProviderNotConnectedError(
                "Provider is not connected",
                context={"user_id": batch.user_id, "provider": batch.provider.value}
            )

        raw_item_ids = await self._raw_item_ids(batch, linked_ids)

        new_batch_id = await SyncOrchestrator(self.db).create_locked_batch(
            batch.user_id,
            batch.provider,
            preferences_snapshot=batch.preferences_snapshot,
            watermark_before=batch.watermark_before,
            start_kind=start_kind,
            retry_of_batch_id=batch.batch_id,
            scope_item_ids=sorted(stage_of.keys()),
            import_cursor={"fetch_ids": fetch_ids} if fetch_ids else None,
            raw_item_ids=raw_item_ids
        )

        logger.info(
            f"Retry batch {new_batch_id} created for {batch_id}: "
            f"{len(stage_of)} item(s) from {start_kind.value}"
        )
        return new_batch_id

    async def _batch_item_ids(self, batch: SyncBatch) -> List[str]:
        result = await self.db.execute(
            select(RawItem.provider_item_id)
            .join(BatchItem, BatchItem.raw_item_id == RawItem.id)
            .where(BatchItem.batch_id == batch.batch_id)
        )
        return list(result.scalars().all())

    async def _raw_item_ids(self, batch: SyncBatch, provider_item_ids: List[str]) -> List[int]:
        if not provider_item_ids:
            return []
        result = await self.db.execute(
            select(RawItem.id).where(
                and_(
                    RawItem.user_id == batch.user_id,
                    RawItem.provider == batch.provider,
                    RawItem.provider_item_id.in_(provider_item_ids)
                )
            )
        )
        return list(result.scalars().all())
