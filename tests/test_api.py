from __future__ import annotations

import os
from pathlib import Path

from fastapi.testclient import TestClient

from erpsync.api.app import create_app
from erpsync.core.config import get_settings
from erpsync.db.init_db import initialize_database
from erpsync.db.models import SyncDirection, SyncEntity
from erpsync.db.session import reset_engine
from erpsync.erp.memory import InMemoryErpClient, RecordingHandler, make_items
from erpsync.erp.protocols import HandlerRegistry


def _prepare_client(tmp_path: Path, handler: RecordingHandler | None = None) -> TestClient:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["ERPSYNC_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    reset_engine()
    initialize_database()

    registry = HandlerRegistry()
    registry.register(SyncEntity.PRODUCTS, SyncDirection.ERP_TO_STORE, handler or RecordingHandler())
    erp_client = InMemoryErpClient({SyncEntity.PRODUCTS: make_items(25)})
    return TestClient(create_app(erp_client, registry))


def test_health_endpoint(tmp_path: Path) -> None:
    client = _prepare_client(tmp_path)
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_tick_cancel_and_pending_flow(tmp_path: Path) -> None:
    client = _prepare_client(tmp_path)

    first = client.post("/api/v1/sync/products/start", json={"batch_size": 10})
    assert first.status_code == 200
    body = first.json()
    assert body["outcome"] == "running"
    assert body["progress"]["processed"] == 10
    assert body["progress"]["percentage"] == 40.0
    assert body["progress"]["stalled"] is False
    run_id = body["run_id"]

    busy = client.post("/api/v1/sync/products/start", json={})
    assert busy.json()["outcome"] == "busy"
    assert busy.json()["progress"] is None

    lock = client.get("/api/v1/sync/products/lock").json()
    assert lock["held"] is True
    assert lock["holder"] == run_id
    assert lock["in_tick"] is False

    second = client.post("/api/v1/sync/products/tick", json={})
    assert second.json()["progress"]["processed"] == 20

    cancel = client.post("/api/v1/sync/products/cancel")
    assert cancel.json() == {"entity": "products", "cancel_requested": True}

    cancelled = client.post("/api/v1/sync/products/tick", json={})
    assert cancelled.json()["outcome"] == "cancelled"
    assert cancelled.json()["progress"]["percentage"] == 100.0

    assert client.get("/api/v1/sync/products/lock").json()["held"] is False

    pending = client.get("/api/v1/sync/pending").json()
    assert len(pending) == 1
    assert pending[0]["run_id"] == run_id
    assert pending[0]["offset"] == 20
    assert pending[0]["message"].startswith("Recovery point from ")

    history = client.get("/api/v1/sync/history", params={"entity": "products"}).json()
    assert [entry["status"] for entry in history] == ["cancelled"]

    acknowledged = client.post("/api/v1/sync/products/acknowledge")
    assert acknowledged.json()["acknowledged"] is True
    progress = client.get("/api/v1/sync/products/progress").json()
    assert progress["status"] == "idle"
    assert progress["run_id"] is None


def test_run_errors_are_listed(tmp_path: Path) -> None:
    client = _prepare_client(tmp_path, RecordingHandler(fail_references={"SKU-00002"}))

    run_id = client.post("/api/v1/sync/products/tick", json={"batch_size": 10}).json()["run_id"]
    errors = client.get(f"/api/v1/sync/runs/{run_id}/errors").json()

    assert len(errors) == 1
    assert errors[0]["item_position"] == 2
    assert errors[0]["item_reference"] == "SKU-00002"
    assert errors[0]["message"] == "rejected SKU-00002"


def test_invalid_requests_are_rejected(tmp_path: Path) -> None:
    client = _prepare_client(tmp_path)

    unknown_entity = client.post("/api/v1/sync/invoices/tick", json={})
    assert unknown_entity.status_code == 422

    missing_handler = client.post("/api/v1/sync/orders/tick", json={})
    assert missing_handler.status_code == 422
    assert "No sync handler registered" in missing_handler.json()["detail"]

    extra_field = client.post("/api/v1/sync/products/tick", json={"batch_size": 10, "turbo": True})
    assert extra_field.status_code == 422

    bad_batch = client.post("/api/v1/sync/products/tick", json={"batch_size": 0})
    assert bad_batch.status_code == 422

    assert client.get("/api/v1/sync/products/progress").json()["status"] == "idle"


def test_summary_and_purge_routes(tmp_path: Path) -> None:
    client = _prepare_client(tmp_path, RecordingHandler(fail_references={"SKU-00002", "SKU-00021"}))

    for _ in range(3):
        client.post("/api/v1/sync/products/tick", json={"batch_size": 10})

    summary = client.get("/api/v1/sync/summary", params={"days": 7})
    assert summary.status_code == 200
    body = summary.json()
    assert body["window_days"] == 7
    assert body["entity"] is None
    assert body["total_runs"] == 1
    assert body["runs_by_status"] == {"completed": 1}
    assert body["success_rate"] == 100.0
    assert body["total_items"] == 25
    assert body["average_items_per_run"] == 25.0
    assert body["error_count"] == 2
    assert body["errors_by_type"] == {"rejected": 2}

    orders = client.get("/api/v1/sync/summary", params={"entity": "orders"}).json()
    assert orders["window_days"] == 7
    assert orders["total_runs"] == 0
    assert orders["average_duration_seconds"] is None

    assert client.get("/api/v1/sync/summary", params={"days": 0}).status_code == 422

    purge = client.post("/api/v1/sync/maintenance/purge")
    assert purge.status_code == 200
    assert purge.json() == {"kv_entries": 0, "error_records": 0}
