from sqlalchemy import Column, Integer, String, Enum, DateTime, Index
from datetime import datetime
from models.base import Base, Provider


class SyncWatermark(Base):
    """
    Tracks incremental sync state per user and provider.

    Purpose:
    - Decide between full and incremental fetch at batch creation
    - Avoid re-fetching items that were already imported

    Design:
    - One row per (user, provider)
    - watermark_value holds the timestamp of the newest imported item
    - Written only when a batch completes; a failed batch leaves it alone so
      the next sync starts from the same point
    """
    __tablename__ = "sync_watermarks"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False)
    provider = Column(Enum(Provider), nullable=False)

    watermark_value = Column(String(255), nullable=True)
    last_batch_id = Column(String(36), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_watermark_user_provider", "user_id", "provider", unique=True),
    )
