"""
Custom exceptions for the sync pipeline with structured error context.

Every failure the orchestrator, the runner or an adapter can raise carries a
message, a context dict and the original exception, so it can be logged as
structured data and stored on a job.

Exception Hierarchy:
    SyncException (base)
    ├── PreconditionError
    │   ├── ProviderNotConnectedError
    │   ├── AlreadySyncingError
    │   ├── PreferencesMissingError
    │   ├── PreferencesLockedError
    │   └── NothingToRetryError
    ├── BatchNotFoundError
    ├── ProviderError
    │   ├── TransientProviderError
    │   │   ├── NetworkError
    │   │   ├── RateLimitError
    │   │   └── ProviderTimeoutError
    │   ├── CredentialInvalidError
    │   └── ProviderResponseError
    ├── ItemLevelError
    │   └── MalformedItemError
    ├── EnrichmentError
    │   └── TransientEnrichmentError
    └── JobStoreError
        └── ClaimConflictError
"""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncException(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (user, provider, batch, ...)
        original_exception: The original exception that was caught (if any)
    """

    # Reason code stored on ErrorRecords when this error is recorded
    reason_code = "internal"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "reason_code": self.reason_code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Precondition Errors (rejected synchronously, never create a batch)
# ============================================================================

class PreconditionError(SyncException):
    """Base exception for requests rejected before any batch is created."""
    pass


class ProviderNotConnectedError(PreconditionError):
    """The user has no valid stored credential for the provider."""
    pass


class AlreadySyncingError(PreconditionError):
    """
    The (user, provider) sync lock is held by a non-terminal batch.

    Callers should surface this as a blocking "sync in progress" state,
    not as an error toast.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        active_batch_id: Optional[str] = None
    ):
        super().__init__(message, context)
        self.active_batch_id = active_batch_id
        if active_batch_id:
            self.context["active_batch_id"] = active_batch_id


class PreferencesMissingError(PreconditionError):
    """Stored preferences are unreadable and no defaults apply."""
    pass


class PreferencesLockedError(PreconditionError):
    """Preferences cannot change once a batch for the provider has completed."""
    pass


class NothingToRetryError(PreconditionError):
    """The batch has no errored items to retry."""
    pass


class BatchNotFoundError(SyncException):
    """The requested batch does not exist (or belongs to another user)."""
    pass


# ============================================================================
# Provider Errors
# ============================================================================

class ProviderError(SyncException):
    """Base exception for provider adapter failures."""
    pass


class TransientProviderError(ProviderError):
    """
    Provider failure that is expected to clear on its own.

    Use this for:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    """

    reason_code = "transient"


class NetworkError(TransientProviderError):
    """Network-related errors that should be retried."""
    pass


class RateLimitError(TransientProviderError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class ProviderTimeoutError(TransientProviderError):
    """The adapter call exceeded its time budget."""
    pass


class CredentialInvalidError(ProviderError):
    """
    The stored credential was rejected (HTTP 401/403, revoked grant).

    Fails the Import job outright; the caller should prompt a reconnect.
    """

    reason_code = "credential_invalid"


class ProviderResponseError(ProviderError):
    """The provider answered with something the adapter cannot use."""
    pass


# ============================================================================
# Item-Level Errors (recorded, never fail the job)
# ============================================================================

class ItemLevelError(SyncException):
    """A failure scoped to a single provider record."""

    reason_code = "item_level"


class MalformedItemError(ItemLevelError):
    """
    Raised when a raw item cannot be mapped to a processed record.

    Context should include:
        - provider: Provider of the item
        - provider_item_id: Item identifier (if it could be read)
        - field_errors: Field-level validation failures
    """
    pass


# ============================================================================
# Enrichment Errors
# ============================================================================

class EnrichmentError(SyncException):
    """The enrichment (embedding) service rejected a record."""

    reason_code = "item_level"


class TransientEnrichmentError(EnrichmentError):
    """The enrichment service timed out or is temporarily unavailable."""

    reason_code = "transient"


# ============================================================================
# Job Store Errors
# ============================================================================

class JobStoreError(SyncException):
    """Base exception for job persistence failures."""
    pass


class ClaimConflictError(JobStoreError):
    """Another runner claimed the job first."""
    pass
