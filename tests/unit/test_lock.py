"""
Unit tests for the database-backed sync lock
"""

import pytest
from conftest import USER_ID
from core.exceptions import AlreadySyncingError
from ingestion.lock import SyncLockManager
from models.base import Provider


async def acquire(session_maker, batch_id, ttl_seconds=None, provider=Provider.MAIL):
    async with session_maker() as session:
        locks = SyncLockManager(session, ttl_seconds=ttl_seconds)
        await locks.ensure_row(USER_ID, provider)
        taken_over = await locks.acquire(USER_ID, provider, batch_id)
        await session.commit()
        return taken_over


async def holder(session_maker, provider=Provider.MAIL):
    async with session_maker() as session:
        return await SyncLockManager(session).holder(USER_ID, provider)


@pytest.mark.asyncio
async def test_acquire_and_release(session_maker):
    assert await acquire(session_maker, "batch-1") is None
    assert await holder(session_maker) == "batch-1"

    async with session_maker() as session:
        locks = SyncLockManager(session)
        # Only the holder can release
        assert await locks.release(USER_ID, Provider.MAIL, "batch-2") is False
        assert await locks.release(USER_ID, Provider.MAIL, "batch-1") is True
        await session.commit()

    assert await holder(session_maker) is None
    assert await acquire(session_maker, "batch-2") is None


@pytest.mark.asyncio
async def test_held_lock_rejects_second_batch(session_maker):
    await acquire(session_maker, "batch-1")

    with pytest.raises(AlreadySyncingError) as exc_info:
        await acquire(session_maker, "batch-2")

    assert exc_info.value.active_batch_id == "batch-1"
    assert exc_info.value.context["provider"] == "mail"
    assert await holder(session_maker) == "batch-1"


@pytest.mark.asyncio
async def test_locks_are_per_provider(session_maker):
    await acquire(session_maker, "mail-batch", provider=Provider.MAIL)
    await acquire(session_maker, "calendar-batch", provider=Provider.CALENDAR)

    assert await holder(session_maker, Provider.MAIL) == "mail-batch"
    assert await holder(session_maker, Provider.CALENDAR) == "calendar-batch"


@pytest.mark.asyncio
async def test_expired_lock_counts_as_free(session_maker):
    await acquire(session_maker, "batch-1", ttl_seconds=-60)
    assert await holder(session_maker) is None

    # No batch row exists for batch-1, so nothing is reported as taken over
    assert await acquire(session_maker, "batch-2") is None
    assert await holder(session_maker) == "batch-2"


@pytest.mark.asyncio
async def test_ensure_row_is_idempotent(session_maker):
    async with session_maker() as session:
        locks = SyncLockManager(session)
        await locks.ensure_row(USER_ID, Provider.MAIL)
        await locks.ensure_row(USER_ID, Provider.MAIL)

        lock = await locks.get_lock(USER_ID, Provider.MAIL)
        assert lock.held_by_batch_id is None


@pytest.mark.asyncio
async def test_force_release_without_holder(session_maker):
    async with session_maker() as session:
        assert await SyncLockManager(session).force_release(USER_ID, Provider.MAIL) is None
