"""
Per-(user, provider) sync lock stored as a database row.

Acquire and release are conditional UPDATEs checked through rowcount, so
any number of API workers and runner processes can contend for the same
lock without an in-process primitive.
"""

from typing import Optional
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select, update, and_, or_
from models.base import Provider, BatchStatus
from models.batch import SyncBatch
from models.sync_lock import SyncLock
from core.config import settings
from core.exceptions import AlreadySyncingError
import logging

logger = logging.getLogger(__name__)


class SyncLockManager:
    """
    Single-active-batch lock.

    Usage:
        locks = SyncLockManager(session)
        await locks.ensure_row(user_id, provider)
        await locks.acquire(user_id, provider, batch_id)
        ... create batch ...
        await session.commit()

    acquire() does not commit; the caller commits it together with the
    batch it creates so both become visible at once.
    """

    def __init__(self, db_session: AsyncSession, ttl_seconds: Optional[int] = None):
        self.db = db_session
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.SYNC_LOCK_TTL_SECONDS

    def _match(self, user_id: str, provider: Provider):
        return and_(SyncLock.user_id == user_id, SyncLock.provider == Provider(provider))

    async def get_lock(self, user_id: str, provider: Provider) -> Optional[SyncLock]:
        result = await self.db.execute(
            select(SyncLock)
            .where(self._match(user_id, provider))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def ensure_row(self, user_id: str, provider: Provider):
        """Create the lock row in its own transaction if it does not exist yet."""
        if await self.get_lock(user_id, provider) is not None:
            return

        self.db.add(SyncLock(user_id=user_id, provider=Provider(provider)))
        try:
            await self.db.commit()
        except IntegrityError:
            # Created concurrently by another caller
            await self.db.rollback()

    async def holder(self, user_id: str, provider: Provider) -> Optional[str]:
        """Batch currently holding an unexpired lock, if any."""
        lock = await self.get_lock(user_id, provider)
        if lock is None or lock.held_by_batch_id is None:
            return None
        if lock.expires_at is not None and lock.expires_at < datetime.utcnow():
            return None
        return lock.held_by_batch_id

    async def acquire(self, user_id: str, provider: Provider, batch_id: str) -> Optional[str]:
        """
        Take the lock for batch_id.

        Returns the id of a previous holder whose lock had expired (that
        batch is marked expired), or None.

        Raises:
            AlreadySyncingError: The lock is held by an unexpired batch
        """
        previous = await self.get_lock(user_id, provider)
        previous_holder = previous.held_by_batch_id if previous else None

        now = datetime.utcnow()
        result = await self.db.execute(
            update(SyncLock)
            .where(
                and_(
                    self._match(user_id, provider),
                    or_(SyncLock.held_by_batch_id.is_(None), SyncLock.expires_at < now)
                )
            )
            .values(
                held_by_batch_id=batch_id,
                acquired_at=now,
                expires_at=now + timedelta(seconds=self.ttl_seconds),
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            active_batch_id = await self.holder(user_id, provider)
            raise AlreadySyncingError(
                "A sync is already in progress",
                context={"user_id": user_id, "provider": Provider(provider).value},
                active_batch_id=active_batch_id
            )

        if previous_holder and previous_holder != batch_id:
            expired = await self._expire_batch(previous_holder)
            if expired:
                logger.warning(
                    f"Sync lock for {user_id}/{Provider(provider).value} expired; "
                    f"batch {previous_holder} marked expired"
                )
                return previous_holder
        return None

    async def _expire_batch(self, batch_id: str) -> bool:
        result = await self.db.execute(
            update(SyncBatch)
            .where(and_(SyncBatch.batch_id == batch_id, SyncBatch.status == BatchStatus.ACTIVE))
            .values(status=BatchStatus.EXPIRED, completed_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def renew(self, batch_id: str) -> bool:
        """
        Push the expiry of the lock held by batch_id to now + ttl.

        Called on every pass that makes progress, so only a batch that stopped
        moving can expire. A lock already taken over is left alone. Does not
        commit.
        """
        now = datetime.utcnow()
        result = await self.db.execute(
            update(SyncLock)
            .where(SyncLock.held_by_batch_id == batch_id)
            .values(expires_at=now + timedelta(seconds=self.ttl_seconds), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def release(self, user_id: str, provider: Provider, batch_id: str) -> bool:
        """Release the lock if batch_id still holds it. Does not commit."""
        result = await self.db.execute(
            update(SyncLock)
            .where(and_(self._match(user_id, provider), SyncLock.held_by_batch_id == batch_id))
            .values(held_by_batch_id=None, acquired_at=None, expires_at=None, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        released = result.rowcount > 0
        if not released:
            logger.debug(f"Lock for {user_id}/{Provider(provider).value} no longer held by {batch_id}")
        return released

    async def force_release(self, user_id: str, provider: Provider) -> Optional[str]:
        """
        Operator escape hatch for a stuck batch.

        Marks the holding batch expired, frees the lock and commits.
        Returns the id of the batch that held it.
        """
        lock = await self.get_lock(user_id, provider)
        if lock is None or lock.held_by_batch_id is None:
            return None

        batch_id = lock.held_by_batch_id
        await self._expire_batch(batch_id)
        await self.release(user_id, provider, batch_id)
        await self.db.commit()
        logger.warning(f"Force-released sync lock for {user_id}/{Provider(provider).value} (batch {batch_id})")
        return batch_id
