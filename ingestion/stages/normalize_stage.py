"""
Normalize stage: map raw items to processed records.
"""

from typing import List, Optional, Any, Tuple
from datetime import datetime
from sqlalchemy import select
from models.base import JobKind
from models.raw_item import RawItem, BatchItem
from models.processed_record import ProcessedRecord
from ingestion.stages.stage import BatchItemStage
from ingestion.transformers.normalizer import RecordNormalizer
from schemas.records import ProcessedRecordCreate
import logging

logger = logging.getLogger(__name__)

# Fields whose change invalidates downstream enrichment
CONTENT_FIELDS = ("title", "body_text", "occurred_at", "participants")


class NormalizeStage(BatchItemStage):
    """
    Map each raw item of the batch to zero or one processed record.

    Preference filters come from the batch snapshot, so editing preferences
    never changes an in-flight batch. Filtered items count as processed
    without producing a record; malformed items become item-level errors.
    """

    kind = JobKind.NORMALIZE

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.normalizer = RecordNormalizer(self.batch.provider, self.batch.preferences_snapshot)

    async def count_input(self) -> int:
        return await self.job_store.count_batch_items(self.batch.batch_id)

    async def load_units(
        self,
        after: Optional[int] = None,
        ids: Optional[List[int]] = None,
        limit: Optional[int] = None
    ) -> List[Tuple[int, Any]]:
        query = (
            select(BatchItem.id, RawItem)
            .join(RawItem, RawItem.id == BatchItem.raw_item_id)
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

    def unit_item_id(self, unit: RawItem) -> Optional[str]:
        return unit.provider_item_id

    async def process_unit(self, unit: RawItem):
        record = self.normalizer.normalize(unit)
        if record is None:
            return
        await self._upsert(record)

    async def _upsert(self, data: ProcessedRecordCreate):
        result = await self.db.execute(
            select(ProcessedRecord).where(ProcessedRecord.raw_item_id == data.raw_item_id)
        )
        record = result.scalar_one_or_none()

        values = {
            "user_id": data.user_id,
            "provider": data.provider,
            "provider_item_id": data.provider_item_id,
            "record_type": data.record_type,
            "title": data.title,
            "body_text": data.body_text,
            "occurred_at": data.occurred_at,
            "participants": [p.model_dump() for p in data.participants],
            "record_metadata": data.record_metadata,
        }

        now = datetime.utcnow()
        if record is None:
            record = ProcessedRecord(raw_item_id=data.raw_item_id, created_at=now, **values)
            self.db.add(record)
        else:
            changed = any(getattr(record, field) != values[field] for field in CONTENT_FIELDS)
            for field, value in values.items():
                setattr(record, field, value)
            if changed:
                record.extracted_at = None
                record.embedded_at = None

        record.batch_id = self.batch.batch_id
        record.updated_at = now
