from __future__ import annotations

import logging
from datetime import datetime, timezone

from erpsync.db.models import SyncEntity
from erpsync.kv.store import KeyValueStore, checkpoint_key
from erpsync.sync.errors import InvariantViolationError
from erpsync.sync.types import Checkpoint, checkpoint_from_payload, checkpoint_to_payload

logger = logging.getLogger(__name__)


class RecoveryStore:
    def __init__(self, store: KeyValueStore, ttl_seconds: int):
        self._store = store
        self._ttl_seconds = ttl_seconds

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def save(self, entity: SyncEntity, checkpoint: Checkpoint) -> None:
        if checkpoint.entity != entity:
            raise InvariantViolationError(
                f"Checkpoint for {checkpoint.entity.value} cannot be saved under {entity.value}"
            )
        if checkpoint.offset < 0:
            raise InvariantViolationError(f"Refusing to save negative offset {checkpoint.offset}")
        checkpoint.updated_at = self._now()
        self._store.set(checkpoint_key(entity.value), checkpoint_to_payload(checkpoint), ttl_seconds=self._ttl_seconds)
        logger.info(
            "Checkpoint saved entity=%s run_id=%s batch=%s offset=%s processed=%s",
            entity.value,
            checkpoint.run_id,
            checkpoint.batch_index,
            checkpoint.offset,
            checkpoint.processed,
        )

    def load(self, entity: SyncEntity) -> Checkpoint | None:
        payload = self._store.get(checkpoint_key(entity.value))
        if payload is None:
            return None
        try:
            checkpoint = checkpoint_from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvariantViolationError(f"Stored checkpoint for {entity.value} is unreadable: {exc}") from exc
        if checkpoint.offset < 0 or checkpoint.batch_index < 0:
            raise InvariantViolationError(
                f"Stored checkpoint for {entity.value} has negative offset={checkpoint.offset} "
                f"batch_index={checkpoint.batch_index}"
            )
        return checkpoint

    def clear(self, entity: SyncEntity) -> None:
        if self._store.delete(checkpoint_key(entity.value)):
            logger.info("Checkpoint cleared entity=%s", entity.value)

    def pending(self) -> list[Checkpoint]:
        pending: list[Checkpoint] = []
        for entity in SyncEntity:
            checkpoint = self.load(entity)
            if checkpoint is not None:
                pending.append(checkpoint)
        return pending


def describe(checkpoint: Checkpoint) -> str:
    total = "?" if checkpoint.total is None else str(checkpoint.total)
    return (
        f"Recovery point from {checkpoint.updated_at.strftime('%Y-%m-%d %H:%M:%S')} UTC. "
        f"Last batch processed: {checkpoint.batch_index}. "
        f"Items processed: {checkpoint.processed}/{total}."
    )
