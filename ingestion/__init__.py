"""
Sync orchestration and pipeline components.

This package turns a user's "Sync" request into resumable background work
against rate-limited provider APIs:

Modules:
    base: Provider adapter interface and FetchResult
    stores: Preference and credential stores
    lock: Row-based (user, provider) sync lock
    job_store: Batch/job persistence, claims and finalization
    orchestrator: start_sync entry point
    runner: Bounded, re-entrant job runner passes
    status: Read-only status aggregation for polling clients
    retry: Error summaries and scoped retry batches
    enrichment: Embedding service client
    scheduler: APScheduler integration for periodic runner passes

Subpackages:
    adapters: Mail and calendar HTTP adapters
    stages: Import, Normalize, Extract and Embed stage processors
    transformers: Raw item to canonical record mapping

Architecture:
    Each batch has four jobs chained by dependency:

    1. Import - page through the provider into raw items
    2. Normalize - map raw items to processed records
    3. Extract - derive contacts from record participants
    4. Embed - send record text to the enrichment service

    Every runner pass claims a job, processes one page and re-enqueues it,
    so a crash loses at most one page of work.

Usage:
    from ingestion.orchestrator import SyncOrchestrator
    from ingestion.runner import JobRunner

    batch_id = await SyncOrchestrator(session).start_sync(user_id, "mail")
    while await JobRunner().run_pending():
        pass

Error Handling:
    All components use custom exceptions from core.exceptions; item-level
    failures are recorded as ErrorRecords and never fail their job.
"""

__all__ = [
    "ProviderAdapter",
    "FetchResult",
    "SyncOrchestrator",
    "JobRunner",
    "StatusAggregator",
    "RetryService",
    "SyncLockManager",
    "JobStore",
]
