"""
Mail provider adapter.

Pages through the provider's message listing oldest first, bounded below by
the sync watermark (incremental sync) or by the preference time window
(first sync).
"""

from typing import List, Dict, Any, Optional
from datetime import datetime
from ingestion.adapters.http_adapter import HTTPProviderAdapter
from ingestion.base import FetchResult, parse_timestamp
from models.base import Provider
from core.config import settings
import logging

logger = logging.getLogger(__name__)


class MailAdapter(HTTPProviderAdapter):
    """
    Fetch messages from the mail API.

    Response shape:
        {"messages": [...], "nextPageToken": "...", "total": 120}
    """

    provider = Provider.MAIL

    def __init__(self, access_token: Optional[str] = None, preferences=None, **kwargs):
        kwargs.setdefault("base_url", settings.MAIL_API_URL)
        super().__init__(access_token=access_token, preferences=preferences, **kwargs)

    async def fetch(
        self,
        cursor: Optional[str],
        page_size: int,
        since: Optional[datetime] = None
    ) -> FetchResult:
        params = {
            "pageToken": cursor,
            "maxResults": page_size,
            "order": "asc",
            "after": since.isoformat() if since else None,
        }
        label_includes = getattr(self.preferences, "label_includes", None)
        if label_includes:
            params["labelIds"] = ",".join(label_includes)

        logger.info(f"Fetching mail page (cursor={cursor}, since={params['after']})")
        data = await self._get_page("/messages", params)

        messages = data.get("messages") or []
        next_cursor = data.get("nextPageToken")

        return FetchResult(
            items=messages,
            next_cursor=next_cursor,
            has_more=bool(next_cursor),
            total_estimate=data.get("total"),
        )

    async def fetch_items(self, item_ids: List[str]) -> List[Dict[str, Any]]:
        items = []
        for item_id in item_ids:
            message = await self._get_item(f"/messages/{item_id}")
            if message is not None:
                items.append(message)
        return items

    def extract_item_id(self, item: Dict[str, Any]) -> str:
        return str(item.get("id", ""))

    def extract_timestamp(self, item: Dict[str, Any]) -> Optional[datetime]:
        """internalDate (epoch ms) wins over the Date header"""
        return parse_timestamp(item.get("internalDate")) or parse_timestamp(item.get("date"))
