from sqlalchemy import Column, String, Enum, DateTime, Index, ForeignKey
from datetime import datetime
from models.base import Base, IdType, JSONType, Provider


class RawItem(Base):
    """
    Stores provider items exactly as fetched.

    Purpose:
    - Immutable audit trail of what the provider returned
    - Input of the Normalize stage, also for retry batches
    - Survives failed batches (no rollback of imported items)

    Design Decisions:
    - Unique on (user_id, provider, provider_item_id) so re-delivery of the
      same item is a no-op
    - Never updated after insert; later stages only read it
    """
    __tablename__ = "raw_items"

    id = Column(IdType, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False)
    provider = Column(Enum(Provider), nullable=False)
    provider_item_id = Column(String(255), nullable=False)

    payload = Column(JSONType, nullable=False)
    occurred_at = Column(DateTime, nullable=True, index=True)

    first_batch_id = Column(String(36), ForeignKey("sync_batches.batch_id"), nullable=True, index=True)
    ingested_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("idx_raw_item_identity", "user_id", "provider", "provider_item_id", unique=True),
    )


class BatchItem(Base):
    """
    Membership of a raw item in a batch.

    A batch's downstream stages read their input through this table, which
    lets a re-delivered or retried item take part in a new batch without
    touching the immutable raw item.
    """
    __tablename__ = "batch_items"

    id = Column(IdType, primary_key=True, autoincrement=True)
    batch_id = Column(String(36), ForeignKey("sync_batches.batch_id"), nullable=False)
    raw_item_id = Column(IdType, ForeignKey("raw_items.id"), nullable=False)
    linked_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_batch_item_unique", "batch_id", "raw_item_id", unique=True),
    )
