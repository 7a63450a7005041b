"""
Import stage: fetch provider pages into raw items.
"""

import asyncio
from typing import List, Dict, Any, Optional, Coroutine
from datetime import datetime, timedelta
from sqlalchemy import select, and_
from models.base import JobKind, Provider, ReasonCode
from models.raw_item import RawItem
from ingestion.base import ProviderAdapter, parse_timestamp
from ingestion.stages.stage import StageProcessor
from schemas.preferences import parse_preferences
from core.config import settings
from core.exceptions import (
    TransientProviderError,
    ProviderTimeoutError,
    MalformedItemError,
    ItemLevelError,
)
import logging

logger = logging.getLogger(__name__)


class ImportStage(StageProcessor):
    """
    Fetch one page from the provider and persist it.

    Regular batches page through the provider from the batch's starting
    point (watermark, or the preference window on a first sync). Cursor:

        {"since": iso, "page_token": str, "watermark_candidate": iso,
         "fetch_attempts": int}

    Retry batches re-fetch only their scoped ids through fetch_items:

        {"fetch_ids": [...], "offset": int, "retry": {id: attempts}}

    Raw items are upserted idempotently; re-delivered items are only linked
    to the batch. The watermark candidate (max item timestamp) is kept in
    the cursor and committed by batch finalization.
    """

    kind = JobKind.IMPORT

    def __init__(self, *args, adapter: ProviderAdapter, max_items: Optional[int] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.adapter = adapter
        self.max_items = max_items or settings.SYNC_MAX_ITEMS_PER_BATCH

    async def run(self) -> bool:
        if "fetch_ids" in (self.job.cursor or {}):
            return await self._run_scoped()
        return await self._run_paged()

    # ------------------------------------------------------------------
    # Regular (paged) import
    # ------------------------------------------------------------------

    async def _run_paged(self) -> bool:
        cursor = self._cursor()
        since = self._since(cursor)
        seen = (self.job.processed_items or 0) + (self.job.errored_items or 0)
        page_size = max(1, min(self.page_size, self.max_items - seen))

        try:
            result = await self._call(self.adapter.fetch(cursor.get("page_token"), page_size, since=since))
        except TransientProviderError as e:
            return await self._page_failed(cursor, e)

        cursor.pop("fetch_attempts", None)
        items = result.items[:page_size]
        await self._store_items(items, cursor)

        seen = (self.job.processed_items or 0) + (self.job.errored_items or 0)
        if result.total_estimate is not None:
            self.job.total_items = max(min(result.total_estimate, self.max_items), seen)

        more = bool(result.has_more and result.next_cursor) and seen < self.max_items
        if result.has_more and not more:
            logger.info(f"Batch {self.batch.batch_id} reached the {self.max_items} item cap; rest deferred to next sync")

        cursor["page_token"] = result.next_cursor if more else None
        self.job.cursor = cursor

        logger.info(
            f"Imported {len(items)} {self.batch.provider.value} item(s) for batch {self.batch.batch_id} "
            f"({seen} so far, more={more})"
        )

        if not more:
            self.job.total_items = seen
            return True
        return False

    def _since(self, cursor: dict) -> Optional[datetime]:
        """Lower bound of the fetch; fixed on the first pass."""
        if "since" in cursor:
            return parse_timestamp(cursor["since"])

        since = parse_timestamp(self.batch.watermark_before)
        if since is None:
            preferences = parse_preferences(self.batch.provider, self.batch.preferences_snapshot)
            if self.batch.provider == Provider.MAIL:
                days = preferences.time_range_days
            else:
                days = preferences.past_days
            since = datetime.utcnow() - timedelta(days=days)

        cursor["since"] = since.isoformat()
        return since

    async def _page_failed(self, cursor: dict, error: TransientProviderError) -> bool:
        """Count a failed page fetch; re-raise once attempts are exhausted."""
        attempts = int(cursor.get("fetch_attempts", 0)) + 1
        if attempts >= self.max_item_attempts:
            logger.error(
                f"Page fetch for batch {self.batch.batch_id} failed {attempts} times, giving up",
                extra={"error_context": error.to_dict()}
            )
            raise error

        cursor["fetch_attempts"] = attempts
        self.job.cursor = cursor
        await self.job_store.record_error(
            self.job,
            reason_code=ReasonCode.TRANSIENT,
            message=error.message,
            attempt=attempts
        )
        logger.warning(
            f"Page fetch for batch {self.batch.batch_id} failed (attempt {attempts}), will retry",
            extra={"error_context": error.to_dict()}
        )
        return False

    async def _store_items(self, items: List[Dict[str, Any]], cursor: dict):
        keyed = {}
        for item in items:
            item_id = self.adapter.extract_item_id(item)
            if not item_id:
                error = MalformedItemError(
                    "Item has no identifier",
                    context={"provider": self.batch.provider.value}
                )
                await self._item_failed(cursor, "unkeyed", None, error)
                continue
            keyed[item_id] = item

        raw_items = await self._persist(keyed)
        self.job.processed_items = (self.job.processed_items or 0) + len(raw_items)

        candidate = self.adapter.watermark_candidate(list(keyed.values()))
        previous = parse_timestamp(cursor.get("watermark_candidate"))
        proposed = parse_timestamp(candidate)
        if proposed is not None and (previous is None or proposed > previous):
            cursor["watermark_candidate"] = proposed.isoformat()

    # ------------------------------------------------------------------
    # Retry (scoped) import
    # ------------------------------------------------------------------

    async def _run_scoped(self) -> bool:
        cursor = self._cursor()
        fetch_ids = list(cursor.get("fetch_ids") or [])
        offset = int(cursor.get("offset") or 0)

        if self.job.total_items is None:
            self.job.total_items = len(fetch_ids)

        retry_ids = list((cursor.get("retry") or {}).keys())[:self.page_size]
        remaining = self.page_size - len(retry_ids)
        next_ids = fetch_ids[offset:offset + max(remaining, 0)]

        for item_id in retry_ids + next_ids:
            try:
                items = await self._call(self.adapter.fetch_items([item_id]))
            except TransientProviderError as e:
                await self._item_failed(cursor, item_id, item_id, e)
                continue

            keyed = {self.adapter.extract_item_id(i): i for i in items if self.adapter.extract_item_id(i)}
            if not keyed:
                error = ItemLevelError(
                    "Item no longer exists at the provider",
                    context={"provider": self.batch.provider.value, "provider_item_id": item_id}
                )
                await self._item_failed(cursor, item_id, item_id, error)
                continue

            await self._persist(keyed)
            self._item_succeeded(cursor, item_id)

        cursor["offset"] = offset + len(next_ids)
        self.job.cursor = cursor
        return cursor["offset"] >= len(fetch_ids) and not cursor.get("retry")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call(self, coro: Coroutine):
        """Outer time budget for one adapter call, on top of httpx timeouts."""
        budget = settings.PROVIDER_TIMEOUT_SECONDS * (settings.PROVIDER_MAX_RETRIES + 1)
        try:
            return await asyncio.wait_for(coro, timeout=budget)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"{self.batch.provider.value} adapter call exceeded {budget} seconds",
                context={"batch_id": self.batch.batch_id},
                original_exception=e
            )

    async def _persist(self, keyed: Dict[str, Dict[str, Any]]) -> List[RawItem]:
        """Insert unseen raw items, reuse existing ones, link all to the batch."""
        if not keyed:
            return []

        result = await self.db.execute(
            select(RawItem).where(
                and_(
                    RawItem.user_id == self.batch.user_id,
                    RawItem.provider == self.batch.provider,
                    RawItem.provider_item_id.in_(list(keyed.keys()))
                )
            )
        )
        existing = {raw.provider_item_id: raw for raw in result.scalars().all()}

        raw_items = []
        for item_id, item in keyed.items():
            raw = existing.get(item_id)
            if raw is None:
                raw = RawItem(
                    user_id=self.batch.user_id,
                    provider=self.batch.provider,
                    provider_item_id=item_id,
                    payload=item,
                    occurred_at=self.adapter.extract_timestamp(item),
                    first_batch_id=self.batch.batch_id,
                    ingested_at=datetime.utcnow()
                )
                self.db.add(raw)
            raw_items.append(raw)

        await self.db.flush()
        await self.job_store.link_items(self.batch.batch_id, [raw.id for raw in raw_items])
        return raw_items
