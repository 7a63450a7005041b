"""
Unit tests for job state transitions and batch finalization
"""

import pytest
from conftest import USER_ID
from core.exceptions import ClaimConflictError, NetworkError
from ingestion.job_store import JobStore, resolve_batch_status
from ingestion.lock import SyncLockManager
from ingestion.orchestrator import SyncOrchestrator
from models.base import Provider, JobKind, JobStatus, BatchStatus, ReasonCode
from models.job import SyncJob
from schemas.api import JobProgress


def job(kind, status, **kwargs):
    return SyncJob(job_id=f"{kind.value}-job", batch_id="b1", kind=kind, status=status, **kwargs)


class TestResolveBatchStatus:
    def test_running_batch_has_no_terminal_status(self):
        jobs = [
            job(JobKind.IMPORT, JobStatus.COMPLETED),
            job(JobKind.NORMALIZE, JobStatus.RUNNING),
            job(JobKind.EXTRACT, JobStatus.QUEUED),
            job(JobKind.EMBED, JobStatus.QUEUED),
        ]
        assert resolve_batch_status(jobs) is None

    def test_all_completed(self):
        jobs = [job(kind, JobStatus.COMPLETED) for kind in JobKind]
        assert resolve_batch_status(jobs) == BatchStatus.COMPLETED

    @pytest.mark.parametrize("failed_kind", [JobKind.IMPORT, JobKind.NORMALIZE])
    def test_core_stage_error_fails_batch(self, failed_kind):
        jobs = [job(kind, JobStatus.ERROR if kind == failed_kind else JobStatus.QUEUED) for kind in JobKind]
        assert resolve_batch_status(jobs) == BatchStatus.FAILED

    @pytest.mark.parametrize("failed_kind", [JobKind.EXTRACT, JobKind.EMBED])
    def test_best_effort_error_still_completes(self, failed_kind):
        jobs = [job(kind, JobStatus.ERROR if kind == failed_kind else JobStatus.COMPLETED) for kind in JobKind]
        assert resolve_batch_status(jobs) == BatchStatus.COMPLETED

    def test_no_jobs(self):
        assert resolve_batch_status([]) is None


class TestProgress:
    def test_percentage_is_clamped(self):
        assert job(JobKind.IMPORT, JobStatus.RUNNING, total_items=120, processed_items=50).progress_percentage == 41.7
        assert job(JobKind.IMPORT, JobStatus.RUNNING, total_items=10, processed_items=15).progress_percentage == 100.0
        assert job(JobKind.EMBED, JobStatus.COMPLETED, total_items=0, processed_items=0).progress_percentage == 0.0

    def test_unknown_total_is_discovering(self):
        running = job(JobKind.IMPORT, JobStatus.RUNNING, processed_items=50, errored_items=0)
        assert running.progress_percentage is None

        progress = JobProgress(
            job_id=running.job_id,
            kind=running.kind,
            status=running.status,
            processed_items=50,
            progress_percentage=running.progress_percentage
        )
        assert progress.discovering is True
        assert progress.kind == "import"

    def test_known_total_is_not_discovering(self):
        progress = JobProgress(job_id="j", kind=JobKind.IMPORT, status=JobStatus.RUNNING, total_items=10)
        assert progress.discovering is False


async def start_batch(session_maker, connected_user) -> str:
    async with session_maker() as session:
        return await SyncOrchestrator(session).start_sync(connected_user, Provider.MAIL)


@pytest.mark.asyncio
async def test_only_import_is_eligible_in_new_batch(session_maker, connected_user):
    batch_id = await start_batch(session_maker, connected_user)

    async with session_maker() as session:
        eligible = await JobStore(session).list_eligible(10)

    assert [(j.batch_id, j.kind) for j in eligible] == [(batch_id, JobKind.IMPORT)]


@pytest.mark.asyncio
async def test_second_claim_conflicts(session_maker, connected_user):
    await start_batch(session_maker, connected_user)

    async with session_maker() as session:
        store = JobStore(session)
        job_id = (await store.list_eligible(1))[0].job_id
        claimed = await store.claim(job_id)
        assert claimed.status == JobStatus.RUNNING
        assert claimed.attempts == 1

    async with session_maker() as session:
        with pytest.raises(ClaimConflictError) as exc_info:
            await JobStore(session).claim(job_id)
        assert exc_info.value.context["job_id"] == job_id

        # A running job is no longer eligible
        assert await JobStore(session).list_eligible(10) == []


@pytest.mark.asyncio
async def test_finish_pass_requeues_until_exhausted(session_maker, connected_user):
    await start_batch(session_maker, connected_user)

    async with session_maker() as session:
        store = JobStore(session)
        claimed = await store.claim((await store.list_eligible(1))[0].job_id)
        claimed.processed_items = 50
        await store.finish_pass(claimed, exhausted=False)
        assert claimed.status == JobStatus.QUEUED
        assert claimed.total_items is None

        claimed = await store.claim(claimed.job_id)
        claimed.processed_items = 58
        claimed.errored_items = 2
        await store.finish_pass(claimed, exhausted=True)
        assert claimed.status == JobStatus.COMPLETED
        assert claimed.total_items == 60
        assert claimed.attempts == 2


@pytest.mark.asyncio
async def test_fail_job_records_reason(session_maker, connected_user):
    batch_id = await start_batch(session_maker, connected_user)

    async with session_maker() as session:
        store = JobStore(session)
        claimed = await store.claim((await store.list_eligible(1))[0].job_id)
        await store.fail_job(claimed, NetworkError("Server error after 3 retries"))

        assert claimed.status == JobStatus.ERROR
        assert claimed.last_error == "Server error after 3 retries"
        assert await store.finalize_if_terminal(batch_id) == BatchStatus.FAILED
        assert await SyncLockManager(session).holder(USER_ID, Provider.MAIL) is None


@pytest.mark.asyncio
async def test_errored_items_are_counted_once(session_maker, connected_user):
    batch_id = await start_batch(session_maker, connected_user)

    async with session_maker() as session:
        store = JobStore(session)
        import_job = (await store.get_jobs(batch_id))[0]
        await store.record_error(import_job, ReasonCode.ITEM_LEVEL, "bad", provider_item_id="a", permanent=True)
        await store.record_error(import_job, ReasonCode.ITEM_LEVEL, "bad again", provider_item_id="a", permanent=True)
        await store.record_error(import_job, ReasonCode.TRANSIENT, "busy", provider_item_id="b")
        await store.record_error(import_job, ReasonCode.INTERNAL, "no item", permanent=True)
        await session.commit()

        assert await store.count_errored_items(batch_id) == 2


@pytest.mark.asyncio
async def test_finalize_commits_watermark_once(session_maker, connected_user):
    batch_id = await start_batch(session_maker, connected_user)

    async with session_maker() as session:
        store = JobStore(session)
        jobs = await store.get_jobs(batch_id)
        for stage_job in jobs:
            stage_job.status = JobStatus.COMPLETED
        jobs[0].cursor = {"watermark_candidate": "2024-01-15T10:00:00"}
        await session.commit()

        assert await store.finalize_if_terminal(batch_id) == BatchStatus.COMPLETED
        # Already final
        assert await store.finalize_if_terminal(batch_id) is None

        watermark = await store.get_watermark(connected_user, Provider.MAIL)
        assert watermark.watermark_value == "2024-01-15T10:00:00"
        assert watermark.last_batch_id == batch_id
        assert (await store.get_batch(batch_id)).completed_at is not None
        assert await SyncLockManager(session).holder(connected_user, Provider.MAIL) is None


@pytest.mark.asyncio
async def test_finalize_with_import_errors_keeps_watermark(session_maker, connected_user):
    batch_id = await start_batch(session_maker, connected_user)

    async with session_maker() as session:
        store = JobStore(session)
        jobs = await store.get_jobs(batch_id)
        for stage_job in jobs:
            stage_job.status = JobStatus.COMPLETED
        jobs[0].errored_items = 1
        jobs[0].cursor = {"watermark_candidate": "2024-01-15T10:00:00"}
        await session.commit()

        assert await store.finalize_if_terminal(batch_id) == BatchStatus.COMPLETED
        assert await store.get_watermark(connected_user, Provider.MAIL) is None
