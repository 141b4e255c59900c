"""Tests for the HTTP API."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from factories import build_rows, make_upc, to_csv
from reconciler.api.deps import get_store
from reconciler.config import settings
from reconciler.db.repository import CatalogStoreError
from reconciler.main import app


@pytest.fixture
def client(store):
    """Test client backed by the in-memory store; lifespan is not started."""
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "active_runs": 0}


def test_trigger_and_fetch_run(client):
    """Test posting a feed snapshot runs the pipeline and records the run."""
    content = to_csv(build_rows(25, missing_upc_every=5))

    response = client.post(
        "/api/feeds/feed-a/runs",
        params={"retailer_id": "retailer-a", "format": "csv", "run_id": "run-api-1"},
        content=content,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["run_id"] == "run-api-1"
    assert body["status"] == "SUCCESS"
    assert body["indexable_count"] == 20
    assert body["quarantined_count"] == 5
    assert body["batch_jobs"] == 1
    assert set(body["stages"]) == {"parse", "classify", "match", "benchmark", "insight"}

    fetched = client.get("/api/runs/run-api-1")
    assert fetched.status_code == 200
    assert fetched.json()["indexable_count"] == 20


def test_empty_feed_body(client):
    response = client.post("/api/feeds/feed-a/runs", params={"retailer_id": "retailer-a"}, content=b"")

    assert response.status_code == 400


def test_unknown_run(client):
    assert client.get("/api/runs/nope").status_code == 404
    assert client.post("/api/runs/nope/cancel").status_code == 404


def test_quarantine_list_and_resolve(client, store):
    """Test an operator can list quarantined rows and resolve one."""
    client.post(
        "/api/feeds/feed-a/runs",
        params={"retailer_id": "retailer-a", "format": "csv", "run_id": "run-api-2"},
        content=to_csv(build_rows(10, missing_upc_every=5)),
    )

    listed = client.get("/api/quarantine", params={"feed_id": "feed-a"})
    assert listed.status_code == 200
    records = listed.json()
    assert len(records) == 2
    assert records[0]["status"] == "QUARANTINED"
    assert records[0]["blocking_issues"][0]["code"] == "MISSING_UPC"

    record_id = records[0]["id"]
    resolved = client.post(f"/api/quarantine/{record_id}/resolve", json={"upc": make_upc(424242)})
    assert resolved.status_code == 200
    assert resolved.json()["canonical_sku_id"] is not None
    assert store.quarantined[record_id].status.value == "RESOLVED"

    again = client.post(f"/api/quarantine/{record_id}/resolve", json={"upc": make_upc(424242)})
    assert again.status_code == 400


def test_resolve_survives_matching_failure(client, store, monkeypatch):
    """Test a resolve whose matching fails returns 503 and can be retried."""
    monkeypatch.setattr(settings, "match_batch_max_retries", 0)
    monkeypatch.setattr(settings, "match_retry_backoff_seconds", 0)
    client.post(
        "/api/feeds/feed-a/runs",
        params={"retailer_id": "retailer-a", "format": "csv", "run_id": "run-api-3"},
        content=to_csv(build_rows(5, missing_upc_every=5)),
    )
    record_id = client.get("/api/quarantine").json()[0]["id"]

    real_assign = store.assign_canonicals
    store.assign_canonicals = AsyncMock(side_effect=CatalogStoreError("lock timeout"))
    failed = client.post(f"/api/quarantine/{record_id}/resolve", json={"upc": make_upc(77)})
    assert failed.status_code == 503
    assert store.quarantined[record_id].status.value == "QUARANTINED"

    store.assign_canonicals = real_assign
    retried = client.post(f"/api/quarantine/{record_id}/resolve", json={"upc": make_upc(77)})
    assert retried.status_code == 200
    assert store.quarantined[record_id].status.value == "RESOLVED"
