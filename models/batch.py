from sqlalchemy import Column, String, Enum, DateTime, Index
from datetime import datetime
import uuid
from models.base import Base, JSONType, Provider, BatchStatus


def new_token() -> str:
    return str(uuid.uuid4())


class SyncBatch(Base):
    """
    One manual-sync invocation for one user and provider.

    Purpose:
    - Groups the four stage jobs of a sync attempt
    - Freezes the preferences the sync runs with
    - Records the watermark the import started from

    Design:
    - preferences_snapshot is copied at creation so later preference edits
      cannot change an in-flight batch
    - scope_item_ids is only set for retry batches and limits the batch to
      the provider items that failed in the original batch
    """
    __tablename__ = "sync_batches"

    batch_id = Column(String(36), primary_key=True, default=new_token)

    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(Enum(Provider), nullable=False)

    status = Column(Enum(BatchStatus), default=BatchStatus.ACTIVE, nullable=False, index=True)

    preferences_snapshot = Column(JSONType, nullable=False, default=dict)
    watermark_before = Column(String(255), nullable=True)

    # Retry lineage
    retry_of_batch_id = Column(String(36), nullable=True, index=True)
    scope_item_ids = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_batch_user_provider_created", "user_id", "provider", "created_at"),
    )

    @property
    def is_retry(self) -> bool:
        return self.retry_of_batch_id is not None
