"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import Provider, JobKind, JobStatus, BatchStatus


# ============================================================================
# Progress / Status Schemas
# ============================================================================

class JobProgress(BaseModel):
    """Progress of one pipeline stage within a batch"""
    job_id: str
    kind: JobKind
    status: JobStatus
    depends_on: Optional[JobKind] = None
    total_items: Optional[int] = None
    processed_items: int = 0
    errored_items: int = 0
    progress_percentage: Optional[float] = Field(
        None, description="Clamped to [0, 100]; null while the total is being discovered"
    )
    discovering: bool = False
    updated_at: Optional[datetime] = None

    @validator("discovering", always=True)
    def flag_discovery(cls, v, values):
        """A null total means the stage is still discovering its input"""
        return values.get("total_items") is None and values.get("status") != JobStatus.ERROR

    class Config:
        from_attributes = True
        use_enum_values = True


class BatchView(BaseModel):
    """User-facing view of one sync batch"""
    batch_id: str
    provider: Provider
    status: BatchStatus
    state: str = Field(..., description="syncing, completed, failed or expired")
    error_count: int = 0
    is_retry: bool = False
    retry_of_batch_id: Optional[str] = None
    actions: List[str] = Field(default_factory=list)
    created_at: datetime
    completed_at: Optional[datetime] = None
    jobs: List[JobProgress] = Field(default_factory=list)

    class Config:
        use_enum_values = True


class KindCounts(BaseModel):
    """Job counts for one stage kind across all of a user's batches"""
    queued: int = 0
    done: int = 0
    error: int = 0


class LastSync(BaseModel):
    watermark: Optional[str] = None
    synced_at: Optional[datetime] = None
    batch_id: Optional[str] = None


class ProviderStatus(BaseModel):
    """Connection, watermark and batch state for one provider"""
    provider: Provider
    connected: bool
    scopes: List[str] = Field(default_factory=list)
    last_sync: Optional[LastSync] = None
    preferences_locked: bool = False
    active_batch: Optional[BatchView] = None
    latest_batch: Optional[BatchView] = None

    class Config:
        use_enum_values = True


class StatusView(BaseModel):
    """
    Dashboard shape polled by clients.

    job_counts covers every batch of the user, not just the latest, so a
    caller can tell "nothing synced yet" from "sync ran but only errored".
    """
    user_id: str
    providers: Dict[str, ProviderStatus] = Field(default_factory=dict)
    job_counts: Dict[str, KindCounts] = Field(default_factory=dict)
    is_syncing: bool = False
    poll_interval_seconds: int
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "user_123",
                "providers": {
                    "mail": {
                        "provider": "mail",
                        "connected": True,
                        "scopes": ["mail.readonly"],
                        "last_sync": {
                            "watermark": "2024-01-15T10:00:00",
                            "synced_at": "2024-01-15T10:02:11",
                            "batch_id": "0b0c6f1e-6a55-4a8e-9d0f-2d8f9b7b1c11"
                        },
                        "preferences_locked": True,
                        "active_batch": None
                    }
                },
                "job_counts": {
                    "import": {"queued": 0, "done": 1, "error": 0},
                    "normalize": {"queued": 0, "done": 1, "error": 0}
                },
                "is_syncing": False,
                "poll_interval_seconds": 60
            }
        }


# ============================================================================
# Error Summary Schemas
# ============================================================================

class ErrorDetail(BaseModel):
    provider_item_id: Optional[str] = None
    job_kind: JobKind
    reason_code: str
    message: Optional[str] = None
    attempt: int
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class ErrorSummary(BaseModel):
    """Errored items of a batch, grouped by their latest reason code"""
    batch_id: str
    count: int
    reason_breakdown: Dict[str, int] = Field(default_factory=dict)
    stage_breakdown: Dict[str, int] = Field(default_factory=dict)
    recent: List[ErrorDetail] = Field(default_factory=list)


# ============================================================================
# Action Schemas
# ============================================================================

class StartSyncResponse(BaseModel):
    batch_id: str
    provider: Provider
    message: str = "Sync queued"

    class Config:
        use_enum_values = True


class RetryResponse(BaseModel):
    batch_id: str
    retry_of_batch_id: str


class RunPendingResponse(BaseModel):
    processed_count: int
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class PreferencesResponse(BaseModel):
    provider: Provider
    locked: bool
    preferences: Dict[str, Any]

    class Config:
        use_enum_values = True


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    active_batches: int = 0
    queued_jobs: int = 0
    stuck_jobs: int = 0
    # Declared last so the validator sees the counters
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if values.get("stuck_jobs", 0) > 0:
            return "degraded"
        return v or "healthy"


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
