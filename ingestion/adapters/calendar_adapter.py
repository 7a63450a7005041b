"""
Calendar provider adapter.

Events are listed in order of last modification so the watermark can follow
edits as well as new events; the preference window bounds which events are
considered at all.
"""

from typing import List, Dict, Any, Optional
from datetime import datetime, timedelta
from ingestion.adapters.http_adapter import HTTPProviderAdapter
from ingestion.base import FetchResult, parse_timestamp
from models.base import Provider
from core.config import settings
import logging

logger = logging.getLogger(__name__)

# Upper bound the calendar API accepts for maxResults
MAX_PAGE_SIZE = 2500


class CalendarAdapter(HTTPProviderAdapter):
    """
    Fetch events from the calendar API.

    Response shape:
        {"items": [...], "nextPageToken": "..."}
    """

    provider = Provider.CALENDAR

    def __init__(self, access_token: Optional[str] = None, preferences=None, **kwargs):
        kwargs.setdefault("base_url", settings.CALENDAR_API_URL)
        super().__init__(access_token=access_token, preferences=preferences, **kwargs)

    def _time_window(self):
        now = datetime.utcnow()
        past_days = getattr(self.preferences, "past_days", 365)
        future_days = getattr(self.preferences, "future_days", 90)
        return now - timedelta(days=past_days), now + timedelta(days=future_days)

    async def fetch(
        self,
        cursor: Optional[str],
        page_size: int,
        since: Optional[datetime] = None
    ) -> FetchResult:
        time_min, time_max = self._time_window()
        params = {
            "pageToken": cursor,
            "maxResults": min(page_size, MAX_PAGE_SIZE),
            "orderBy": "updated",
            "singleEvents": "true",
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "updatedMin": since.isoformat() if since else None,
        }
        calendar_ids = getattr(self.preferences, "selected_calendar_ids", None)
        if calendar_ids:
            params["calendarIds"] = ",".join(calendar_ids)

        logger.info(f"Fetching calendar page (cursor={cursor}, since={params['updatedMin']})")
        data = await self._get_page("/events", params)

        events = data.get("items") or []
        next_cursor = data.get("nextPageToken")

        return FetchResult(
            items=events,
            next_cursor=next_cursor,
            has_more=bool(next_cursor),
            total_estimate=data.get("total"),
        )

    async def fetch_items(self, item_ids: List[str]) -> List[Dict[str, Any]]:
        items = []
        for item_id in item_ids:
            event = await self._get_item(f"/events/{item_id}")
            if event is not None:
                items.append(event)
        return items

    def extract_item_id(self, item: Dict[str, Any]) -> str:
        return str(item.get("id", ""))

    def extract_timestamp(self, item: Dict[str, Any]) -> Optional[datetime]:
        """Last modification time, falling back to the event start"""
        updated = parse_timestamp(item.get("updated"))
        if updated:
            return updated
        start = item.get("start") or {}
        if isinstance(start, dict):
            return parse_timestamp(start.get("dateTime") or start.get("date"))
        return parse_timestamp(start)
