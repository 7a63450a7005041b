from sqlalchemy import BigInteger, Integer, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only auto-increments INTEGER PRIMARY KEY columns
IdType = BigInteger().with_variant(Integer(), "sqlite")


# ============================================================================
# ENUMS
# ============================================================================

class Provider(str, enum.Enum):
    """External account-based data providers"""
    MAIL = "mail"
    CALENDAR = "calendar"


class JobKind(str, enum.Enum):
    """Pipeline stages, in execution order"""
    IMPORT = "import"
    NORMALIZE = "normalize"
    EXTRACT = "extract"
    EMBED = "embed"


class JobStatus(str, enum.Enum):
    """Per-job lifecycle state"""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class BatchStatus(str, enum.Enum):
    """Per-batch lifecycle state"""
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class ReasonCode(str, enum.Enum):
    """Failure taxonomy stored on error records"""
    TRANSIENT = "transient"
    CREDENTIAL_INVALID = "credential_invalid"
    ITEM_LEVEL = "item_level"
    INTERNAL = "internal"


STAGE_ORDER = [JobKind.IMPORT, JobKind.NORMALIZE, JobKind.EXTRACT, JobKind.EMBED]

TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.ERROR)


def upstream_of(kind: JobKind):
    """Return the stage a job of this kind depends on (None for Import)."""
    index = STAGE_ORDER.index(kind)
    return STAGE_ORDER[index - 1] if index > 0 else None
