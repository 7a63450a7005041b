from sqlalchemy import Column, Integer, String, Enum, DateTime, Index
from datetime import datetime
from models.base import Base, Provider


class SyncLock(Base):
    """
    Single-active-batch lock per user and provider, stored as a row.

    Acquire and release are conditional UPDATEs (compare-and-swap on
    held_by_batch_id), so separate processes running the orchestrator and
    the runner agree on who holds it. A lock past expires_at counts as free.
    """
    __tablename__ = "sync_locks"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False)
    provider = Column(Enum(Provider), nullable=False)

    held_by_batch_id = Column(String(36), nullable=True)
    acquired_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_sync_lock_user_provider", "user_id", "provider", unique=True),
    )
