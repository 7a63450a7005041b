"""
Unit tests for the embedding client
"""

import pytest
import httpx
from unittest.mock import AsyncMock, Mock, patch
from core.exceptions import EnrichmentError, TransientEnrichmentError
from ingestion.enrichment import HTTPEmbeddingClient, NoopEmbeddingClient, build_embedding_client
from models.base import Provider
from models.processed_record import ProcessedRecord


@pytest.fixture
def record():
    return ProcessedRecord(
        raw_item_id=1,
        user_id="user_123",
        provider=Provider.MAIL,
        provider_item_id="msg_0001",
        record_type="email",
        title="Quarterly review",
        body_text="Numbers attached"
    )


def embedding_client(*responses, side_effect=None):
    client = AsyncMock()
    client.post.side_effect = side_effect or list(responses)
    return HTTPEmbeddingClient("https://embed.test/v1/embed", timeout=1, client=client), client


@pytest.mark.asyncio
async def test_returns_embedding(record):
    ok = Mock(status_code=200, json=Mock(return_value={"embedding": [0.1, 0.2]}))
    embedder, client = embedding_client(ok)

    assert await embedder.embed(record) == [0.1, 0.2]
    args, kwargs = client.post.call_args
    assert args[0] == "https://embed.test/v1/embed"
    assert kwargs["json"] == {
        "id": "msg_0001",
        "user_id": "user_123",
        "text": "Quarterly review\n\nNumbers attached",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_busy_service_is_transient(record, status_code):
    embedder, _ = embedding_client(Mock(status_code=status_code, text=""))

    with pytest.raises(TransientEnrichmentError) as exc_info:
        await embedder.embed(record)
    assert exc_info.value.context["status_code"] == status_code
    assert exc_info.value.reason_code == "transient"


@pytest.mark.asyncio
async def test_rejected_record_is_permanent(record):
    embedder, _ = embedding_client(Mock(status_code=400, text="text too long"))

    with pytest.raises(EnrichmentError) as exc_info:
        await embedder.embed(record)
    assert not isinstance(exc_info.value, TransientEnrichmentError)
    assert exc_info.value.reason_code == "item_level"


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")])
async def test_transport_failures_are_transient(record, error):
    embedder, _ = embedding_client(side_effect=error)

    with pytest.raises(TransientEnrichmentError):
        await embedder.embed(record)


def test_noop_without_service_url():
    with patch("ingestion.enrichment.settings") as mock_settings:
        mock_settings.EMBED_SERVICE_URL = None
        assert isinstance(build_embedding_client(), NoopEmbeddingClient)


@pytest.mark.asyncio
async def test_noop_embeds_nothing(record):
    assert await NoopEmbeddingClient().embed(record) is None
