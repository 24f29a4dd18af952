from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

from erpsync.core.config import get_settings
from erpsync.db.init_db import initialize_database
from erpsync.db.session import get_session_factory, reset_engine
from erpsync.kv.store import KeyValueStore, checkpoint_key, lock_key, progress_key


def setup_env(tmp_path: Path) -> KeyValueStore:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["ERPSYNC_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    reset_engine()
    initialize_database()
    return KeyValueStore(get_session_factory())


def test_set_get_and_version_bump(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    assert store.get("missing") is None

    store.set("alpha", {"value": 1})
    first = store.get_entry("alpha")
    assert first is not None
    assert first.value == {"value": 1}
    assert first.version == 1
    assert first.expires_at is None

    store.set("alpha", {"value": 2}, ttl_seconds=60)
    second = store.get_entry("alpha")
    assert second is not None
    assert second.value == {"value": 2}
    assert second.version == 2
    assert second.expires_at is not None


def test_add_is_insert_if_absent(tmp_path: Path) -> None:
    store = setup_env(tmp_path)

    assert store.add("lock:products", {"holder": "a"}, ttl_seconds=30) is True
    assert store.add("lock:products", {"holder": "b"}, ttl_seconds=30) is False
    assert store.get("lock:products") == {"holder": "a"}


def test_expired_entries_are_invisible_and_replaceable(tmp_path: Path, monkeypatch) -> None:
    store = setup_env(tmp_path)
    store.add("lock:orders", {"holder": "a"}, ttl_seconds=5)

    real_now = store._now()
    monkeypatch.setattr(store, "_now", lambda: real_now + timedelta(seconds=10))

    assert store.get("lock:orders") is None
    assert store.get_entry("lock:orders") is None
    assert store.add("lock:orders", {"holder": "b"}, ttl_seconds=5) is True
    assert store.get("lock:orders") == {"holder": "b"}


def test_replace_requires_expected_version(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    store.set("progress:products", {"processed": 1})
    entry = store.get_entry("progress:products")
    assert entry is not None

    assert store.replace("progress:products", {"processed": 2}, expected_version=entry.version + 7) is False
    assert store.replace("progress:products", {"processed": 2}, expected_version=entry.version) is True
    assert store.replace("progress:products", {"processed": 3}, expected_version=entry.version) is False

    current = store.get_entry("progress:products")
    assert current is not None
    assert current.value == {"processed": 2}
    assert current.version == entry.version + 1


def test_replace_missing_key_fails(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    assert store.replace("nothing", {"x": 1}, expected_version=1) is False


def test_delete_with_version_guard(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    store.set("checkpoint:customers", {"offset": 10})
    entry = store.get_entry("checkpoint:customers")
    assert entry is not None

    assert store.delete("checkpoint:customers", expected_version=entry.version + 1) is False
    assert store.get("checkpoint:customers") == {"offset": 10}
    assert store.delete("checkpoint:customers", expected_version=entry.version) is True
    assert store.delete("checkpoint:customers") is False


def test_purge_expired_removes_only_stale_rows(tmp_path: Path, monkeypatch) -> None:
    store = setup_env(tmp_path)
    store.set("short", 1, ttl_seconds=1)
    store.set("long", 2, ttl_seconds=3600)
    store.set("forever", 3)

    real_now = store._now()
    monkeypatch.setattr(store, "_now", lambda: real_now + timedelta(seconds=5))

    assert store.purge_expired() == 1
    assert store.get("long") == 2
    assert store.get("forever") == 3


def test_non_positive_ttl_is_rejected(tmp_path: Path) -> None:
    store = setup_env(tmp_path)
    try:
        store.set("alpha", 1, ttl_seconds=0)
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError for ttl_seconds=0")


def test_key_helpers_are_namespaced() -> None:
    assert lock_key("products") == "lock:products"
    assert checkpoint_key("orders") == "checkpoint:orders"
    assert progress_key("customers") == "progress:customers"
