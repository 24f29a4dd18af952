from __future__ import annotations

import logging
from datetime import datetime, timezone

from erpsync.db.models import SyncEntity
from erpsync.kv.store import KeyValueStore, lock_key
from erpsync.sync.types import LockInfo

logger = logging.getLogger(__name__)


class RunLock:
    """Single-flight marker per entity.

    The holder is the run id. A run re-enters its own lock on every tick, but
    only while no other tick of the same run is inside the lock (``in_tick``),
    so overlapping ticks of one run are serialized too.
    """

    def __init__(self, store: KeyValueStore):
        self._store = store

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _payload(self, entity: SyncEntity, run_id: str, ttl: int, *, acquired_at: str, in_tick: bool) -> dict:
        return {
            "entity": entity.value,
            "holder": run_id,
            "acquired_at": acquired_at,
            "renewed_at": self._now().isoformat(),
            "ttl_seconds": ttl,
            "in_tick": in_tick,
        }

    def acquire(self, entity: SyncEntity, run_id: str, ttl: int) -> bool:
        key = lock_key(entity.value)
        entry = self._store.get_entry(key)
        if entry is None:
            payload = self._payload(entity, run_id, ttl, acquired_at=self._now().isoformat(), in_tick=True)
            acquired = self._store.add(key, payload, ttl_seconds=ttl)
            if acquired:
                logger.info("Sync lock acquired entity=%s run_id=%s ttl=%s", entity.value, run_id, ttl)
            else:
                logger.debug("Sync lock contention entity=%s run_id=%s", entity.value, run_id)
            return acquired

        holder = entry.value.get("holder")
        if holder != run_id:
            logger.debug("Sync lock held by another run entity=%s holder=%s", entity.value, holder)
            return False
        if entry.value.get("in_tick"):
            logger.debug("Sync lock busy with an in-flight tick entity=%s run_id=%s", entity.value, run_id)
            return False

        payload = self._payload(entity, run_id, ttl, acquired_at=entry.value["acquired_at"], in_tick=True)
        return self._store.replace(key, payload, expected_version=entry.version, ttl_seconds=ttl)

    def confirm(self, entity: SyncEntity, run_id: str, ttl: int) -> bool:
        """Re-assert the in-flight tick's ownership with a version compare-and-set.

        Fails when the lock expired, was force-released or now belongs to another run.
        """
        key = lock_key(entity.value)
        entry = self._store.get_entry(key)
        if entry is None or entry.value.get("holder") != run_id or not entry.value.get("in_tick"):
            return False
        payload = self._payload(entity, run_id, ttl, acquired_at=entry.value["acquired_at"], in_tick=True)
        return self._store.replace(key, payload, expected_version=entry.version, ttl_seconds=ttl)

    def renew(self, entity: SyncEntity, run_id: str, ttl: int) -> bool:
        key = lock_key(entity.value)
        entry = self._store.get_entry(key)
        if entry is None or entry.value.get("holder") != run_id:
            return False
        payload = self._payload(entity, run_id, ttl, acquired_at=entry.value["acquired_at"], in_tick=False)
        return self._store.replace(key, payload, expected_version=entry.version, ttl_seconds=ttl)

    def release(self, entity: SyncEntity, run_id: str) -> None:
        key = lock_key(entity.value)
        entry = self._store.get_entry(key)
        if entry is None or entry.value.get("holder") != run_id:
            return
        if self._store.delete(key, expected_version=entry.version):
            logger.info("Sync lock released entity=%s run_id=%s", entity.value, run_id)

    def force_release(self, entity: SyncEntity) -> bool:
        released = self._store.delete(lock_key(entity.value))
        if released:
            logger.warning("Sync lock force-released entity=%s", entity.value)
        return released

    def is_held(self, entity: SyncEntity) -> bool:
        return self._store.get_entry(lock_key(entity.value)) is not None

    def info(self, entity: SyncEntity) -> LockInfo | None:
        entry = self._store.get_entry(lock_key(entity.value))
        if entry is None:
            return None
        acquired_at = datetime.fromisoformat(entry.value["acquired_at"])
        return LockInfo(
            entity=entity,
            holder=entry.value["holder"],
            acquired_at=acquired_at,
            renewed_at=datetime.fromisoformat(entry.value["renewed_at"]),
            expires_at=entry.expires_at,
            in_tick=bool(entry.value.get("in_tick")),
            age_seconds=(self._now() - acquired_at).total_seconds(),
        )
