from sqlalchemy import Column, String, Enum, DateTime, Integer, Text, Boolean, Index, ForeignKey
from datetime import datetime
from models.base import Base, IdType, JobKind, ReasonCode


class ErrorRecord(Base):
    """
    Append-only log of failures recorded against a job.

    Design:
    - provider_item_id is NULL for job-level failures (page fetch,
      revoked credential)
    - permanent marks the record that made the item count toward the
      job's errored_items; earlier transient attempts stay as history
    """
    __tablename__ = "error_records"

    id = Column(IdType, primary_key=True, autoincrement=True)

    job_id = Column(String(36), ForeignKey("sync_jobs.job_id"), nullable=False, index=True)
    batch_id = Column(String(36), ForeignKey("sync_batches.batch_id"), nullable=False, index=True)
    job_kind = Column(Enum(JobKind), nullable=False)

    provider_item_id = Column(String(255), nullable=True)
    reason_code = Column(Enum(ReasonCode), nullable=False)
    message = Column(Text, nullable=True)
    attempt = Column(Integer, nullable=False, default=1)
    permanent = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_error_batch_item", "batch_id", "provider_item_id"),
    )
