from __future__ import annotations

import logging
from datetime import datetime, timezone

from erpsync.db.models import RunStatus, SyncEntity
from erpsync.kv.store import KeyValueStore, progress_key
from erpsync.sync.types import (
    ProgressSnapshot,
    ProgressUpdate,
    idle_snapshot,
    progress_from_payload,
    progress_to_payload,
)

logger = logging.getLogger(__name__)

FINISHED_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.CANCELLED})
RUNNING_CEILING = 99.0


class ProgressTracker:
    """Point-in-time progress per entity.

    Percentages are derived from ``processed / total`` whenever the total is
    known; a caller-supplied percentage is only used while the total is
    unknown. Either way the value never moves backwards within a run, stays
    below 100 until the run completes or is cancelled, and is exactly 100
    afterwards.
    """

    MAX_WRITE_ATTEMPTS = 5

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int,
        sample_window: int,
        stall_threshold_seconds: int,
    ):
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._sample_window = sample_window
        self._stall_threshold_seconds = stall_threshold_seconds

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def read(self, entity: SyncEntity) -> ProgressSnapshot:
        payload = self._store.get(progress_key(entity.value))
        if payload is None:
            return idle_snapshot(entity)
        return progress_from_payload(payload)

    def record(self, entity: SyncEntity, update: ProgressUpdate) -> ProgressSnapshot:
        key = progress_key(entity.value)
        for _ in range(self.MAX_WRITE_ATTEMPTS):
            entry = self._store.get_entry(key)
            previous = None if entry is None else progress_from_payload(entry.value)
            snapshot = self._merge(entity, previous, update)
            payload = progress_to_payload(snapshot)
            if entry is None:
                if self._store.add(key, payload, ttl_seconds=self._ttl_seconds):
                    return snapshot
            elif self._store.replace(key, payload, expected_version=entry.version, ttl_seconds=self._ttl_seconds):
                return snapshot

        logger.warning("Progress write contention for entity=%s, falling back to overwrite", entity.value)
        previous = self.read(entity)
        snapshot = self._merge(entity, None if previous.status == RunStatus.IDLE else previous, update)
        self._store.set(key, progress_to_payload(snapshot), ttl_seconds=self._ttl_seconds)
        return snapshot

    def request_cancel(self, entity: SyncEntity) -> bool:
        key = progress_key(entity.value)
        for _ in range(self.MAX_WRITE_ATTEMPTS):
            entry = self._store.get_entry(key)
            if entry is None:
                return False
            snapshot = progress_from_payload(entry.value)
            if snapshot.status != RunStatus.RUNNING:
                return False
            if snapshot.cancel_requested:
                return True
            snapshot.cancel_requested = True
            if self._store.replace(
                key,
                progress_to_payload(snapshot),
                expected_version=entry.version,
                ttl_seconds=self._ttl_seconds,
            ):
                logger.info("Cancellation requested entity=%s run_id=%s", entity.value, snapshot.run_id)
                return True
        return False

    def clear(self, entity: SyncEntity) -> None:
        self._store.delete(progress_key(entity.value))

    def is_stalled(self, snapshot: ProgressSnapshot, now: datetime | None = None) -> bool:
        if snapshot.status != RunStatus.RUNNING or snapshot.updated_at is None:
            return False
        current = now or self._now()
        return (current - snapshot.updated_at).total_seconds() > self._stall_threshold_seconds

    def _merge(
        self,
        entity: SyncEntity,
        previous: ProgressSnapshot | None,
        update: ProgressUpdate,
    ) -> ProgressSnapshot:
        now = self._now()
        base = previous if previous is not None and previous.run_id == update.run_id else None

        status = update.status
        if base is not None and base.status == RunStatus.CANCELLED:
            status = RunStatus.CANCELLED

        processed = update.processed if update.processed is not None else (base.processed if base else 0)
        errors = update.errors if update.errors is not None else (base.errors if base else 0)
        if base is not None:
            processed = max(processed, base.processed)
            errors = max(errors, base.errors)
        total = update.total if update.total is not None else (base.total if base else None)

        started_at = update.started_at or (base.started_at if base else None) or now
        label = update.current_item_label if update.current_item_label is not None else (
            base.current_item_label if base else None
        )
        last_error = update.last_error if update.last_error is not None else (base.last_error if base else None)

        samples = list(base.samples) if base else []
        samples.append((now.timestamp(), processed))
        samples = samples[-self._sample_window :]

        throughput = self._throughput(samples)
        remaining: float | None = None
        if status == RunStatus.RUNNING and throughput and total is not None:
            remaining = round(max(0, total - processed) / throughput, 1)

        return ProgressSnapshot(
            entity=entity,
            run_id=update.run_id,
            status=status,
            percentage=self._percentage(status, base, processed, total, update.percentage),
            processed=processed,
            errors=errors,
            total=total,
            current_item_label=label,
            started_at=started_at,
            updated_at=now,
            elapsed_seconds=round((now - started_at).total_seconds(), 3),
            estimated_remaining_seconds=remaining,
            throughput_per_second=None if throughput is None else round(throughput, 3),
            cancel_requested=bool(base.cancel_requested) if base and status == RunStatus.RUNNING else False,
            last_error=last_error,
            samples=samples,
        )

    def _throughput(self, samples: list[tuple[float, int]]) -> float | None:
        if len(samples) < 2:
            return None
        first_ts, first_processed = samples[0]
        last_ts, last_processed = samples[-1]
        elapsed = last_ts - first_ts
        advanced = last_processed - first_processed
        if elapsed <= 0 or advanced <= 0:
            return None
        return advanced / elapsed

    def _percentage(
        self,
        status: RunStatus,
        base: ProgressSnapshot | None,
        processed: int,
        total: int | None,
        supplied: float | None,
    ) -> float:
        if status in FINISHED_STATUSES:
            return 100.0

        if total is not None and total > 0:
            candidate = processed * 100.0 / total
        elif supplied is not None:
            candidate = supplied
        else:
            candidate = base.percentage if base else 0.0

        candidate = max(0.0, min(100.0, candidate))
        if base is not None:
            candidate = max(candidate, base.percentage)
        return round(min(candidate, RUNNING_CEILING), 2)
