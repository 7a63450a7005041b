"""
Sync Orchestrator - turns "user clicked Sync" into a queued batch.

start_sync performs no provider I/O: it validates preconditions, takes the
(user, provider) lock and creates the batch with one queued job per stage.
The runner does the actual work later.
"""

from typing import List, Optional, Dict, Any, Iterable
from sqlalchemy.ext.asyncio import AsyncSession
from models.base import Provider, JobKind
from models.batch import new_token
from ingestion.job_store import JobStore
from ingestion.lock import SyncLockManager
from ingestion.stores import CredentialStore, PreferenceStore
from core.exceptions import SyncException, ProviderNotConnectedError
import logging

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """
    Entry point for starting syncs.

    Usage:
        orchestrator = SyncOrchestrator(session)
        batch_id = await orchestrator.start_sync("user_123", "mail")
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session
        self.job_store = JobStore(db_session)
        self.locks = SyncLockManager(db_session)
        self.credentials = CredentialStore(db_session)
        self.preferences = PreferenceStore(db_session)

    async def start_sync(self, user_id: str, provider: Provider) -> str:
        """
        Create a new batch for (user, provider).

        Raises:
            ProviderNotConnectedError: No usable credential
            PreferencesMissingError: Stored preferences are unreadable
            AlreadySyncingError: Another batch holds the lock
        """
        provider = Provider(provider)

        if not await self.credentials.is_connected(user_id, provider):
            raise ProviderNotConnectedError(
                "Provider is not connected",
                context={"user_id": user_id, "provider": provider.value}
            )

        preferences = await self.preferences.get_preferences(user_id, provider)
        watermark = await self.job_store.get_watermark(user_id, provider)
        watermark_before = watermark.watermark_value if watermark else None

        batch_id = await self.create_locked_batch(
            user_id,
            provider,
            preferences_snapshot=preferences.model_dump(),
            watermark_before=watermark_before
        )

        mode = f"incremental from {watermark_before}" if watermark_before else "full"
        logger.info(f"Sync started for {user_id}/{provider.value}: batch {batch_id} ({mode})")
        return batch_id

    async def create_locked_batch(
        self,
        user_id: str,
        provider: Provider,
        preferences_snapshot: Dict[str, Any],
        watermark_before: Optional[str],
        start_kind: JobKind = JobKind.IMPORT,
        retry_of_batch_id: Optional[str] = None,
        scope_item_ids: Optional[List[str]] = None,
        import_cursor: Optional[Dict[str, Any]] = None,
        raw_item_ids: Iterable[int] = ()
    ) -> str:
        """
        Acquire the lock and create the batch in one transaction.

        The lock UPDATE is the first write of the transaction, so concurrent
        callers serialize on it and exactly one of them commits a batch.
        """
        await self.locks.ensure_row(user_id, provider)

        batch_id = new_token()
        try:
            await self.locks.acquire(user_id, provider, batch_id)

            await self.job_store.create_batch(
                user_id,
                provider,
                preferences_snapshot=preferences_snapshot,
                watermark_before=watermark_before,
                batch_id=batch_id,
                start_kind=start_kind,
                retry_of_batch_id=retry_of_batch_id,
                scope_item_ids=scope_item_ids,
                import_cursor=import_cursor
            )
            await self.job_store.link_items(batch_id, raw_item_ids)

            await self.db.commit()
        except SyncException:
            await self.db.rollback()
            raise
        except Exception:
            await self.db.rollback()
            logger.exception(f"Failed to create batch for {user_id}/{Provider(provider).value}")
            raise

        return batch_id
