"""
API endpoint tests
"""

import os
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import make_url
from api.main import app
from api.dependencies import get_db, get_runner
from conftest import (
    USER_ID,
    FakeAdapter,
    connect_provider,
    create_schema,
    mail_items,
    make_runner,
    run,
    sqlite_url,
)
from core.config import settings
from core.database import build_engine, build_session_maker
from models.base import Provider

HEADERS = {"X-User-ID": USER_ID}


@pytest.fixture
def api_session_maker(tmp_path):
    """Session factory over a fresh database; NullPool lets it cross event loops"""
    engine = build_engine(sqlite_url(tmp_path))
    run(create_schema(engine))

    yield build_session_maker(engine)

    run(engine.dispose())


@pytest.fixture
def client(api_session_maker):
    """Create test client with database and runner overrides"""

    async def override_get_db():
        async with api_session_maker() as session:
            yield session

    adapter = FakeAdapter(mail_items(30))
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_runner] = lambda: make_runner(api_session_maker, adapter)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def mail_connected(api_session_maker):
    run(connect_provider(api_session_maker, Provider.MAIL))


def run_until_idle(client, max_passes=50):
    for _ in range(max_passes):
        response = client.post("/jobs/run")
        assert response.status_code == 200
        if response.json()["processed_count"] == 0:
            return
    raise AssertionError("jobs still pending")


def test_health_endpoint_database_connected(client):
    """Test health endpoint returns database status"""
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()

    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["active_batches"] == 0
    assert data["stuck_jobs"] == 0
    assert "X-Request-ID" in response.headers


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-42"})
    assert response.headers["X-Request-ID"] == "req-42"


def test_caller_identity_required(client):
    assert client.get("/sync/status").status_code == 401
    assert client.post("/sync/mail", headers={"X-User-ID": "  "}).status_code == 401


def test_start_sync_then_already_syncing(client, mail_connected):
    response = client.post("/sync/mail", headers=HEADERS)

    assert response.status_code == 202
    batch_id = response.json()["batch_id"]
    assert response.json()["provider"] == "mail"

    response = client.post("/sync/mail", headers=HEADERS)
    assert response.status_code == 409
    data = response.json()
    assert data["error"] == "already_syncing"
    assert data["context"]["active_batch_id"] == batch_id
    assert "error_timestamp" not in data["context"]

    health = client.get("/health").json()
    assert health["active_batches"] == 1
    assert health["queued_jobs"] == 4


def test_start_sync_requires_connection(client):
    response = client.post("/sync/calendar", headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["error"] == "provider_not_connected"


def test_unknown_provider(client):
    assert client.post("/sync/fax", headers=HEADERS).status_code == 422


def test_sync_runs_to_completion(client, mail_connected):
    batch_id = client.post("/sync/mail", headers=HEADERS).json()["batch_id"]

    status = client.get("/sync/status", headers=HEADERS).json()
    assert status["is_syncing"] is True
    assert status["providers"]["mail"]["active_batch"]["batch_id"] == batch_id
    assert status["poll_interval_seconds"] == 3

    run_until_idle(client)

    status = client.get("/sync/status", headers=HEADERS).json()
    assert status["is_syncing"] is False
    assert status["poll_interval_seconds"] == 60
    assert status["providers"]["mail"]["latest_batch"]["state"] == "completed"
    assert status["providers"]["mail"]["last_sync"]["batch_id"] == batch_id
    assert status["providers"]["calendar"]["connected"] is False
    assert status["job_counts"]["import"]["done"] == 1

    batch = client.get(f"/sync/batches/{batch_id}", headers=HEADERS).json()
    assert batch["status"] == "completed"
    assert [job["kind"] for job in batch["jobs"]] == ["import", "normalize", "extract", "embed"]
    assert all(job["processed_items"] == 30 for job in batch["jobs"])
    assert batch["actions"] == []

    errors = client.get(f"/sync/batches/{batch_id}/errors", headers=HEADERS).json()
    assert errors["count"] == 0
    assert errors["recent"] == []

    response = client.post(f"/sync/batches/{batch_id}/retry", headers=HEADERS)
    assert response.status_code == 409
    assert response.json()["error"] == "nothing_to_retry"


def test_batches_are_private_to_their_user(client, mail_connected):
    batch_id = client.post("/sync/mail", headers=HEADERS).json()["batch_id"]
    other = {"X-User-ID": "someone_else"}

    assert client.get(f"/sync/batches/{batch_id}", headers=other).status_code == 404
    response = client.get(f"/sync/batches/{batch_id}/errors", headers=other)
    assert response.status_code == 404
    assert response.json()["error"] == "batch_not_found"


def test_unknown_batch(client):
    assert client.get("/sync/batches/missing", headers=HEADERS).status_code == 404
    assert client.post("/sync/batches/missing/retry", headers=HEADERS).status_code == 404
    assert client.get("/sync/batches/missing/errors?limit=0", headers=HEADERS).status_code == 422


def test_run_jobs_without_work(client):
    response = client.post("/jobs/run")

    assert response.status_code == 200
    assert response.json()["processed_count"] == 0


def test_preferences_lifecycle(client, mail_connected):
    response = client.get("/preferences/mail", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["locked"] is False
    assert response.json()["preferences"]["time_range_days"] == 365

    response = client.put("/preferences/mail", headers=HEADERS, json={"time_range_days": 30, "include_body": False})
    assert response.status_code == 200
    assert response.json()["preferences"]["time_range_days"] == 30

    response = client.put("/preferences/mail", headers=HEADERS, json={"time_range_days": 0})
    assert response.status_code == 422

    client.post("/sync/mail", headers=HEADERS)
    run_until_idle(client)

    response = client.put("/preferences/mail", headers=HEADERS, json={"time_range_days": 90})
    assert response.status_code == 409
    assert response.json()["error"] == "preferences_locked"

    response = client.get("/preferences/mail", headers=HEADERS)
    assert response.json()["locked"] is True
    assert response.json()["preferences"]["time_range_days"] == 30


def test_default_database_stays_out_of_working_directory(client):
    client.get("/health")

    url = make_url(settings.DATABASE_URL)
    if url.get_backend_name() == "sqlite" and url.database:
        assert os.path.isabs(url.database)
        assert os.path.dirname(url.database) != os.getcwd()
    assert not os.path.exists(os.path.join(os.getcwd(), ".pytest_sync.db"))
