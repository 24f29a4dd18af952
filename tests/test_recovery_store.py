from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

from erpsync.core.config import get_settings
from erpsync.db.init_db import initialize_database
from erpsync.db.models import SyncDirection, SyncEntity
from erpsync.db.session import get_session_factory, reset_engine
from erpsync.kv.store import KeyValueStore, checkpoint_key
from erpsync.sync.errors import InvariantViolationError
from erpsync.sync.recovery import RecoveryStore, describe
from erpsync.sync.types import Checkpoint


def setup_env(tmp_path: Path) -> tuple[KeyValueStore, RecoveryStore]:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["ERPSYNC_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    reset_engine()
    initialize_database()
    store = KeyValueStore(get_session_factory())
    return store, RecoveryStore(store, ttl_seconds=86400)


def make_checkpoint(entity: SyncEntity = SyncEntity.PRODUCTS, **overrides) -> Checkpoint:
    now = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)
    values = {
        "entity": entity,
        "run_id": "run-1",
        "direction": SyncDirection.ERP_TO_STORE,
        "offset": 40,
        "batch_index": 2,
        "processed": 40,
        "errors": 3,
        "total": 120,
        "filters": {"category": "tools"},
        "batch_size": 20,
        "started_at": now,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return Checkpoint(**values)


def test_save_load_and_clear(tmp_path: Path) -> None:
    _, recovery = setup_env(tmp_path)
    assert recovery.load(SyncEntity.PRODUCTS) is None

    recovery.save(SyncEntity.PRODUCTS, make_checkpoint())
    loaded = recovery.load(SyncEntity.PRODUCTS)
    assert loaded is not None
    assert loaded.run_id == "run-1"
    assert loaded.offset == 40
    assert loaded.batch_index == 2
    assert loaded.errors == 3
    assert loaded.total == 120
    assert loaded.filters == {"category": "tools"}
    assert loaded.direction == SyncDirection.ERP_TO_STORE
    assert loaded.started_at == datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)
    assert loaded.updated_at.tzinfo is not None

    recovery.clear(SyncEntity.PRODUCTS)
    assert recovery.load(SyncEntity.PRODUCTS) is None


def test_save_rejects_mismatched_entity(tmp_path: Path) -> None:
    _, recovery = setup_env(tmp_path)
    try:
        recovery.save(SyncEntity.ORDERS, make_checkpoint(SyncEntity.PRODUCTS))
    except InvariantViolationError:
        pass
    else:
        raise AssertionError("expected InvariantViolationError")
    assert recovery.load(SyncEntity.ORDERS) is None


def test_load_rejects_corrupted_checkpoints(tmp_path: Path) -> None:
    store, recovery = setup_env(tmp_path)

    store.set(checkpoint_key("products"), {"entity": "products", "run_id": "x"})
    try:
        recovery.load(SyncEntity.PRODUCTS)
    except InvariantViolationError as exc:
        assert "unreadable" in str(exc)
    else:
        raise AssertionError("expected InvariantViolationError for missing fields")

    recovery.save(SyncEntity.CUSTOMERS, make_checkpoint(SyncEntity.CUSTOMERS))
    payload = store.get(checkpoint_key("customers"))
    payload["offset"] = -1
    store.set(checkpoint_key("customers"), payload)
    try:
        recovery.load(SyncEntity.CUSTOMERS)
    except InvariantViolationError as exc:
        assert "negative offset" in str(exc)
    else:
        raise AssertionError("expected InvariantViolationError for negative offset")


def test_pending_lists_every_resumable_entity(tmp_path: Path) -> None:
    _, recovery = setup_env(tmp_path)
    recovery.save(SyncEntity.PRODUCTS, make_checkpoint(SyncEntity.PRODUCTS))
    recovery.save(SyncEntity.ORDERS, make_checkpoint(SyncEntity.ORDERS, run_id="run-2", total=None))

    pending = recovery.pending()
    assert [checkpoint.entity for checkpoint in pending] == [SyncEntity.PRODUCTS, SyncEntity.ORDERS]


def test_describe_reports_batch_and_counts() -> None:
    message = describe(make_checkpoint())
    assert message == (
        "Recovery point from 2026-03-14 09:30:00 UTC. Last batch processed: 2. Items processed: 40/120."
    )
    assert describe(make_checkpoint(total=None)).endswith("Items processed: 40/?.")
