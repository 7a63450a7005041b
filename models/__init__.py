"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (Provider, JobKind,
          JobStatus, BatchStatus, ReasonCode)
    batch: One sync attempt for one user and provider
    job: One pipeline stage's execution record within a batch
    raw_item: Provider items as fetched, and their batch membership
    processed_record: Canonical structured records produced by Normalize
    contact: Candidate contacts produced by Extract
    watermark: Incremental sync watermark per user and provider
    error_record: Append-only failure log per job
    sync_lock: Single-active-batch lock rows
    connection: Credential and preference rows owned by collaborators

Usage:
    from models import Base, SyncBatch, SyncJob
    from models.base import JobKind, JobStatus

Relationships:
    - SyncBatch → SyncJob (one-to-many, one job per stage)
    - SyncBatch → BatchItem → RawItem (batch input set)
    - RawItem → ProcessedRecord (one-to-one normalization)
    - SyncJob → ErrorRecord (one-to-many)
"""

from models.base import (
    Base,
    Provider,
    JobKind,
    JobStatus,
    BatchStatus,
    ReasonCode,
)
from models.batch import SyncBatch
from models.job import SyncJob
from models.raw_item import RawItem, BatchItem
from models.processed_record import ProcessedRecord
from models.contact import ExtractedContact
from models.watermark import SyncWatermark
from models.error_record import ErrorRecord
from models.sync_lock import SyncLock
from models.connection import ProviderConnection, UserSyncPreferences

__all__ = [
    "Base",
    "Provider",
    "JobKind",
    "JobStatus",
    "BatchStatus",
    "ReasonCode",
    "SyncBatch",
    "SyncJob",
    "RawItem",
    "BatchItem",
    "ProcessedRecord",
    "ExtractedContact",
    "SyncWatermark",
    "ErrorRecord",
    "SyncLock",
    "ProviderConnection",
    "UserSyncPreferences",
]
