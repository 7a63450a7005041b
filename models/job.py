from sqlalchemy import Column, String, Enum, DateTime, Integer, Text, Index, ForeignKey
from datetime import datetime
from models.base import Base, JSONType, JobKind, JobStatus
from models.batch import new_token


class SyncJob(Base):
    """
    One pipeline stage's unit of work within a batch.

    Purpose:
    - Durable progress counters for the status surface
    - Opaque cursor so a stage can resume after any runner pass
    - Exclusive claim target for concurrent runner invocations

    Design:
    - total_items stays NULL while the total is still being discovered
    - A terminal job (completed/error) is never reopened; retries create
      fresh jobs in a new batch
    """
    __tablename__ = "sync_jobs"

    job_id = Column(String(36), primary_key=True, default=new_token)
    batch_id = Column(String(36), ForeignKey("sync_batches.batch_id"), nullable=False, index=True)

    kind = Column(Enum(JobKind), nullable=False)
    status = Column(Enum(JobStatus), default=JobStatus.QUEUED, nullable=False, index=True)
    depends_on = Column(Enum(JobKind), nullable=True)

    # Stage-specific resume state (page token, last item id, retry queue, ...)
    cursor = Column(JSONType, nullable=True)

    # Progress
    total_items = Column(Integer, nullable=True)
    processed_items = Column(Integer, nullable=False, default=0)
    errored_items = Column(Integer, nullable=False, default=0)

    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_job_batch_kind", "batch_id", "kind", unique=True),
        Index("idx_job_status_created", "status", "created_at"),
    )

    @property
    def progress_percentage(self):
        """Processed share of the total, or None while the total is unknown."""
        if self.total_items is None:
            return None
        percentage = (self.processed_items or 0) / max(self.total_items, 1) * 100
        return round(max(0.0, min(100.0, percentage)), 1)
