"""
Base classes for pipeline stage processors.

A stage processor handles exactly one page of work for one claimed job and
reports whether its input is exhausted. All resume state lives in the job's
JSON cursor, so any runner process can pick up the next page.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Any, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from models.base import JobKind, ReasonCode
from models.batch import SyncBatch
from models.job import SyncJob
from models.raw_item import BatchItem
from models.processed_record import ProcessedRecord
from ingestion.job_store import JobStore
from core.config import settings
from core.exceptions import SyncException
import logging

logger = logging.getLogger(__name__)


class StageProcessor(ABC):
    """
    One page of work for one job.

    Subclasses implement run() and use the item-outcome helpers, which keep
    processed_items, errored_items, the cursor's retry map and the error
    records consistent with each other.
    """

    kind: JobKind

    def __init__(
        self,
        db_session: AsyncSession,
        job: SyncJob,
        batch: SyncBatch,
        page_size: Optional[int] = None,
        max_item_attempts: Optional[int] = None
    ):
        self.db = db_session
        self.job_store = JobStore(db_session)
        self.job = job
        self.batch = batch
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.max_item_attempts = max_item_attempts or settings.MAX_ITEM_ATTEMPTS

    @abstractmethod
    async def run(self) -> bool:
        """Process one page. Returns True when the stage's input is exhausted."""
        pass

    def _cursor(self) -> dict:
        # Always work on a copy; the JSON column is only persisted on reassignment
        return dict(self.job.cursor or {})

    def _item_succeeded(self, cursor: dict, key: str):
        retry = dict(cursor.get("retry") or {})
        retry.pop(key, None)
        cursor["retry"] = retry
        self.job.processed_items = (self.job.processed_items or 0) + 1

    async def _item_failed(
        self,
        cursor: dict,
        key: str,
        provider_item_id: Optional[str],
        error: SyncException
    ):
        """
        Record a failed item.

        Transient failures go back into the retry map until the item has
        failed max_item_attempts times; anything else is permanent at once.
        """
        retry = dict(cursor.get("retry") or {})
        attempt = int(retry.get(key, 0)) + 1
        transient = error.reason_code == ReasonCode.TRANSIENT.value

        if transient and attempt < self.max_item_attempts:
            retry[key] = attempt
            permanent = False
        else:
            retry.pop(key, None)
            permanent = True
            self.job.errored_items = (self.job.errored_items or 0) + 1

        cursor["retry"] = retry
        await self.job_store.record_error(
            self.job,
            reason_code=ReasonCode(error.reason_code),
            message=error.message,
            provider_item_id=provider_item_id,
            attempt=attempt,
            permanent=permanent
        )

        log = logger.warning if permanent else logger.info
        log(
            f"{self.kind.value} item {provider_item_id} failed "
            f"(attempt {attempt}/{self.max_item_attempts}, permanent={permanent}): {error.message}",
            extra={"error_context": error.to_dict()}
        )


class BatchItemStage(StageProcessor):
    """
    Stage whose input is the batch's item set, paged by batch item id.

    Cursor layout:
        {"after": <last batch item id>, "retry": {"<batch item id>": attempts}}

    Items waiting in the retry map are processed first on every pass; the
    stage is exhausted once no new items remain and the retry map is empty.
    """

    @abstractmethod
    async def count_input(self) -> int:
        pass

    @abstractmethod
    async def load_units(
        self,
        after: Optional[int] = None,
        ids: Optional[List[int]] = None,
        limit: Optional[int] = None
    ) -> List[Tuple[int, Any]]:
        """(batch item id, unit) pairs, either after a cursor or by id"""
        pass

    @abstractmethod
    async def process_unit(self, unit: Any):
        """Process one unit; raise a SyncException to record an item failure."""
        pass

    @abstractmethod
    def unit_item_id(self, unit: Any) -> Optional[str]:
        pass

    async def run(self) -> bool:
        cursor = self._cursor()

        if self.job.total_items is None:
            self.job.total_items = await self.count_input()
            logger.info(f"{self.kind.value} job {self.job.job_id}: {self.job.total_items} item(s) to process")

        retry_keys = list((cursor.get("retry") or {}).keys())[:self.page_size]
        retry_units = []
        if retry_keys:
            retry_units = await self.load_units(ids=[int(k) for k in retry_keys])
            found = {str(item_id) for item_id, _ in retry_units}
            for key in retry_keys:
                if key not in found:
                    # Input vanished; nothing left to retry for it
                    cursor["retry"] = {k: v for k, v in cursor["retry"].items() if k != key}

        remaining = self.page_size - len(retry_keys)
        page = []
        if remaining > 0:
            page = await self.load_units(after=int(cursor.get("after") or 0), limit=remaining)

        for batch_item_id, unit in retry_units + page:
            key = str(batch_item_id)
            try:
                await self.process_unit(unit)
            except SyncException as e:
                await self._item_failed(cursor, key, self.unit_item_id(unit), e)
            else:
                self._item_succeeded(cursor, key)

        if page:
            cursor["after"] = page[-1][0]

        self.job.cursor = cursor
        return remaining > 0 and len(page) < remaining and not cursor.get("retry")


class ProcessedRecordStage(BatchItemStage):
    """
    Stage whose input is the processed records of the batch's items.

    Items filtered out or failed by Normalize have no record and are not
    part of this input.
    """

    async def count_input(self) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(BatchItem)
            .join(ProcessedRecord, ProcessedRecord.raw_item_id == BatchItem.raw_item_id)
            .where(BatchItem.batch_id == self.batch.batch_id)
        )
        return result.scalar() or 0

    async def load_units(
        self,
        after: Optional[int] = None,
        ids: Optional[List[int]] = None,
        limit: Optional[int] = None
    ) -> List[Tuple[int, Any]]:
        query = (
            select(BatchItem.id, ProcessedRecord)
            .join(ProcessedRecord, ProcessedRecord.raw_item_id == BatchItem.raw_item_id)
            .where(BatchItem.batch_id == self.batch.batch_id)
        )
        if ids is not None:
            query = query.where(BatchItem.id.in_(ids))
        else:
            query = query.where(BatchItem.id > (after or 0))
        query = query.order_by(BatchItem.id.asc())
        if limit is not None:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return [(row[0], row[1]) for row in result.all()]

    def unit_item_id(self, unit: ProcessedRecord) -> Optional[str]:
        return unit.provider_item_id
