"""
Pytest configuration and fixtures
"""

import os
import tempfile

# Settings are read at import time; keep the app off Postgres and the scheduler off.
# The default database lives in a temp dir so test runs leave nothing in the cwd.
if "DATABASE_URL" not in os.environ:
    _db_dir = tempfile.mkdtemp(prefix="sync-tests-")
    os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_db_dir, 'app.db')}"
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.pop("EMBED_SERVICE_URL", None)

import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from typing import AsyncGenerator, List, Dict, Any, Optional, Set
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import build_engine, build_session_maker
from core.exceptions import CredentialInvalidError, TransientEnrichmentError
from ingestion.base import ProviderAdapter, FetchResult, parse_timestamp
from ingestion.enrichment import EmbeddingClient
from ingestion.runner import JobRunner
from ingestion.stores import CredentialStore
from models import Base
from models.base import Provider

USER_ID = "user_123"


# ============================================================================
# Database
# ============================================================================

def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'sync_test.db'}"


async def create_schema(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-based SQLite so concurrent sessions really contend"""
    engine = build_engine(sqlite_url(tmp_path))
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


async def connect_provider(session_maker, provider=Provider.MAIL, user_id: str = USER_ID):
    async with session_maker() as session:
        await CredentialStore(session).connect(user_id, provider, "token-abc", scopes=[f"{provider.value}.readonly"])


@pytest_asyncio.fixture
async def connected_user(session_maker):
    """USER_ID with a mail connection"""
    await connect_provider(session_maker, Provider.MAIL)
    return USER_ID


async def drain(runner: JobRunner, max_passes: int = 100) -> int:
    """Run passes until nothing is eligible; returns the number of passes that did work"""
    passes = 0
    while passes < max_passes:
        if not await runner.run_pending():
            return passes
        passes += 1
    raise AssertionError(f"Runner still busy after {max_passes} passes")


# ============================================================================
# Provider and enrichment fakes
# ============================================================================

def mail_item(index: int, base: Optional[datetime] = None, **overrides) -> Dict[str, Any]:
    base = base or datetime.utcnow() - timedelta(days=10)
    item = {
        "id": f"msg_{index:04d}",
        "threadId": f"thread_{index // 3}",
        "subject": f"Subject {index}",
        "snippet": f"Snippet {index}",
        "body": f"Body of message {index}",
        "from": f"Sender {index % 7} <sender{index % 7}@example.com>",
        "to": ["me@example.com"],
        "labelIds": ["INBOX"],
        "date": (base + timedelta(minutes=index)).isoformat(),
    }
    item.update(overrides)
    return item


def mail_items(count: int, malformed_every: Optional[int] = None, base: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """count messages; every malformed_every-th one has no sender"""
    base = base or datetime.utcnow() - timedelta(days=10)
    items = []
    for index in range(count):
        item = mail_item(index, base=base)
        if malformed_every and index % malformed_every == 0:
            del item["from"]
        items.append(item)
    return items


class FakeAdapter(ProviderAdapter):
    """
    In-memory provider paging over a fixed item list.

    Cursors are offsets. fail_after raises fail_with once a page would start
    at or beyond that offset.
    """

    provider = Provider.MAIL

    def __init__(
        self,
        items: List[Dict[str, Any]],
        fail_after: Optional[int] = None,
        fail_with=CredentialInvalidError,
        report_total: bool = False,
        honor_since: bool = True
    ):
        super().__init__()
        self.items = items
        self.fail_after = fail_after
        self.fail_with = fail_with
        self.report_total = report_total
        self.honor_since = honor_since
        self.calls = []
        self.item_calls = []

    def _visible(self, since):
        if since is None or not self.honor_since:
            return self.items
        return [i for i in self.items if self.extract_timestamp(i) > since]

    async def fetch(self, cursor, page_size, since=None):
        self.calls.append({"cursor": cursor, "page_size": page_size, "since": since})
        offset = int(cursor or 0)
        if self.fail_after is not None and offset >= self.fail_after:
            raise self.fail_with("Provider refused the request", context={"offset": offset})

        visible = self._visible(since)
        page = visible[offset:offset + page_size]
        next_offset = offset + len(page)
        has_more = next_offset < len(visible)
        return FetchResult(
            items=page,
            next_cursor=str(next_offset) if has_more else None,
            has_more=has_more,
            total_estimate=len(visible) if self.report_total else None
        )

    async def fetch_items(self, item_ids):
        self.item_calls.append(list(item_ids))
        wanted = set(item_ids)
        return [i for i in self.items if i.get("id") in wanted]

    def extract_item_id(self, item):
        return str(item.get("id", ""))

    def extract_timestamp(self, item):
        return parse_timestamp(item.get("date"))


def adapter_factory(adapter: ProviderAdapter):
    """Runner factory that always hands out the same adapter"""
    def build(provider, access_token=None, preferences=None):
        adapter.access_token = access_token
        adapter.preferences = preferences
        return adapter
    return build


class FakeEmbedder(EmbeddingClient):
    """
    Records embedded ids.

    fail_ids always fail transiently; flaky_ids fail once, then succeed.
    """

    def __init__(self, fail_ids: Optional[Set[str]] = None, flaky_ids: Optional[Set[str]] = None):
        self.fail_ids = set(fail_ids or ())
        self.flaky_ids = set(flaky_ids or ())
        self.embedded: List[str] = []
        self.attempts: Dict[str, int] = {}

    async def embed(self, record):
        item_id = record.provider_item_id
        self.attempts[item_id] = self.attempts.get(item_id, 0) + 1
        if item_id in self.fail_ids:
            raise TransientEnrichmentError("Embedding service unavailable", context={"provider_item_id": item_id})
        if item_id in self.flaky_ids and self.attempts[item_id] == 1:
            raise TransientEnrichmentError("Embedding service busy", context={"provider_item_id": item_id})
        self.embedded.append(item_id)
        return [0.0, 1.0]


@pytest.fixture
def embedder():
    return FakeEmbedder()


def make_runner(session_maker, adapter: ProviderAdapter, embedder: Optional[EmbeddingClient] = None, **kwargs) -> JobRunner:
    return JobRunner(
        session_maker=session_maker,
        adapter_factory=adapter_factory(adapter),
        embedder=embedder or FakeEmbedder(),
        **kwargs
    )


def run(coro):
    """Drive a coroutine from synchronous (TestClient) tests"""
    return asyncio.run(coro)
