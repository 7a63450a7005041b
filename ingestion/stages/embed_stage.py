"""
Embed stage: hand processed records to the enrichment service.
"""

import asyncio
from datetime import datetime
from models.base import JobKind
from models.processed_record import ProcessedRecord
from ingestion.enrichment import EmbeddingClient
from ingestion.stages.stage import ProcessedRecordStage
from core.config import settings
from core.exceptions import TransientEnrichmentError
import logging

logger = logging.getLogger(__name__)


class EmbedStage(ProcessedRecordStage):
    """
    Best-effort embedding of every processed record in the batch.

    Records already embedded, or without any text, count as processed
    without a call to the service.
    """

    kind = JobKind.EMBED

    def __init__(self, *args, embedder: EmbeddingClient, **kwargs):
        super().__init__(*args, **kwargs)
        self.embedder = embedder

    async def process_unit(self, unit: ProcessedRecord):
        if unit.embedded_at is not None or not unit.embedding_text:
            return

        try:
            await asyncio.wait_for(self.embedder.embed(unit), timeout=settings.EMBED_TIMEOUT_SECONDS + 5)
        except asyncio.TimeoutError as e:
            raise TransientEnrichmentError(
                "Embedding call exceeded its time budget",
                context={"provider_item_id": unit.provider_item_id},
                original_exception=e
            )

        unit.embedded_at = datetime.utcnow()
