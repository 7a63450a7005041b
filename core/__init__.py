"""
Core utilities and configuration for the provider sync engine.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import AlreadySyncingError, CredentialInvalidError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Open a session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "SyncException",
    "PreconditionError",
    "ProviderNotConnectedError",
    "AlreadySyncingError",
    "PreferencesMissingError",
    "PreferencesLockedError",
    "NothingToRetryError",
    "BatchNotFoundError",
    "ProviderError",
    "TransientProviderError",
    "NetworkError",
    "RateLimitError",
    "ProviderTimeoutError",
    "CredentialInvalidError",
    "ProviderResponseError",
    "ItemLevelError",
    "MalformedItemError",
    "EnrichmentError",
    "TransientEnrichmentError",
    "JobStoreError",
    "ClaimConflictError",
]
