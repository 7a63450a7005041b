"""
Enrichment (embedding) client.

The Embed stage treats the embedding service as an opaque HTTP contract:
POST the record text, receive a vector. The vector itself is stored by the
service; the pipeline only stamps the record as embedded.
"""

from abc import ABC, abstractmethod
from typing import List, Optional
import httpx
from models.processed_record import ProcessedRecord
from core.config import settings
from core.exceptions import EnrichmentError, TransientEnrichmentError
import logging

logger = logging.getLogger(__name__)


class EmbeddingClient(ABC):
    """Interface of the enrichment service used by the Embed stage"""

    @abstractmethod
    async def embed(self, record: ProcessedRecord) -> Optional[List[float]]:
        """
        Embed one processed record.

        Raises:
            TransientEnrichmentError: Timeouts, 429 and 5xx (retried later)
            EnrichmentError: The service rejected the record
        """
        pass

    async def aclose(self):
        pass


class NoopEmbeddingClient(EmbeddingClient):
    """Used when no embedding service is configured; every record succeeds."""

    async def embed(self, record: ProcessedRecord) -> Optional[List[float]]:
        return None


class HTTPEmbeddingClient(EmbeddingClient):
    """POST {"id", "user_id", "text"} to the embedding service as JSON."""

    def __init__(self, url: str, timeout: Optional[float] = None, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout if timeout is not None else settings.EMBED_TIMEOUT_SECONDS
        self._client = client or httpx.AsyncClient(timeout=self.timeout)

    async def embed(self, record: ProcessedRecord) -> Optional[List[float]]:
        payload = {
            "id": record.provider_item_id,
            "user_id": record.user_id,
            "text": record.embedding_text,
        }
        context = {"provider_item_id": record.provider_item_id, "url": self.url}

        try:
            response = await self._client.post(self.url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise TransientEnrichmentError("Embedding request timed out", context=context, original_exception=e)
        except httpx.TransportError as e:
            raise TransientEnrichmentError("Embedding service unreachable", context=context, original_exception=e)

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientEnrichmentError(
                f"Embedding service returned {response.status_code}",
                context={**context, "status_code": response.status_code}
            )
        if response.status_code >= 400:
            raise EnrichmentError(
                f"Embedding rejected with {response.status_code}",
                context={**context, "status_code": response.status_code, "response_body": response.text[:500]}
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EnrichmentError("Embedding response is not JSON", context=context, original_exception=e)

        return data.get("embedding") if isinstance(data, dict) else None

    async def aclose(self):
        await self._client.aclose()


def build_embedding_client() -> EmbeddingClient:
    """HTTP client when EMBED_SERVICE_URL is set, no-op otherwise"""
    if settings.EMBED_SERVICE_URL:
        return HTTPEmbeddingClient(settings.EMBED_SERVICE_URL)
    logger.info("EMBED_SERVICE_URL not set; embedding is a no-op")
    return NoopEmbeddingClient()
