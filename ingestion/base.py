"""
Abstract base class for provider adapters
"""

from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, Field
from models.base import Provider
import logging

logger = logging.getLogger(__name__)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a provider timestamp into a naive UTC datetime.

    Accepts ISO-8601 strings (with or without a trailing Z or offset),
    all-day dates, and epoch milliseconds (int or numeric string).
    Returns None for anything unparseable.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        parsed = datetime.utcfromtimestamp(int(value) / 1000)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class FetchResult(BaseModel):
    """
    One page returned by a provider adapter.

    - items: raw provider records, oldest first
    - next_cursor: opaque page token for the following call
    - has_more: False once the provider has no further pages
    - total_estimate: exact total when the provider knows it, else None
    """
    items: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False
    total_estimate: Optional[int] = None


class ProviderAdapter(ABC):
    """
    Abstract base class for all provider adapters.

    Responsibilities:
    - Paged, incremental fetching from one external provider
    - Re-fetching individual items by id (retry batches)
    - Item identity and timestamp extraction for the watermark

    Adapters are built per runner pass and hold no database state; the
    Import stage owns persistence.
    """

    provider: Provider

    def __init__(self, access_token: Optional[str] = None, preferences: Optional[BaseModel] = None):
        self.access_token = access_token
        self.preferences = preferences

    @abstractmethod
    async def fetch(
        self,
        cursor: Optional[str],
        page_size: int,
        since: Optional[datetime] = None
    ) -> FetchResult:
        """
        Fetch one page of items.

        Args:
            cursor: Page token from the previous call (None for the first page)
            page_size: Maximum number of items to return
            since: Only return items newer than this point

        Raises:
            CredentialInvalidError: Credential rejected by the provider
            TransientProviderError: Timeouts, rate limits, server errors
        """
        pass

    @abstractmethod
    async def fetch_items(self, item_ids: List[str]) -> List[Dict[str, Any]]:
        """Fetch specific items by provider id. Missing ids are skipped."""
        pass

    @abstractmethod
    def extract_item_id(self, item: Dict[str, Any]) -> str:
        """Extract the provider's unique identifier from an item"""
        pass

    @abstractmethod
    def extract_timestamp(self, item: Dict[str, Any]) -> Optional[datetime]:
        """Extract the timestamp the watermark advances on"""
        pass

    def watermark_candidate(self, items: List[Dict[str, Any]]) -> Optional[str]:
        """Max item timestamp of a page, as an ISO string"""
        timestamps = [ts for ts in (self.extract_timestamp(i) for i in items) if ts]
        if timestamps:
            return max(timestamps).isoformat()
        return None

    async def aclose(self):
        """Release any client resources held by the adapter"""
        pass
