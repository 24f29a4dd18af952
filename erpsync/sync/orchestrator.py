from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from erpsync.core.config import Settings
from erpsync.db.models import TERMINAL_STATUSES, RunStatus, SyncDirection, SyncEntity
from erpsync.erp.errors import ErpClientError
from erpsync.erp.protocols import ErpClient, HandlerRegistry
from erpsync.kv.store import KeyValueStore
from erpsync.sync.audit import SyncAuditLog
from erpsync.sync.batch import BatchProcessor, current_label
from erpsync.sync.errors import InvariantViolationError
from erpsync.sync.lock import RunLock
from erpsync.sync.progress import ProgressTracker
from erpsync.sync.recovery import RecoveryStore, describe
from erpsync.sync.types import (
    Checkpoint,
    ErrorRecordSnapshot,
    HistorySnapshot,
    LockInfo,
    ProgressSnapshot,
    ProgressUpdate,
    PurgeReport,
    RunSummary,
    TickOptions,
    TickOutcome,
    TickResult,
)

logger = logging.getLogger(__name__)

INTERNAL_ERROR_KIND = "internal_error"


class SyncOrchestrator:
    """Tick-driven state machine for batch synchronization runs.

    Every call performs at most one batch and persists everything it needs in
    the key-value store, so any process may serve the next tick. Runs move
    ``running -> {completed, cancelled, failed}``; ``running`` loops across
    ticks while the ERP still returns full pages.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        client: ErpClient,
        handlers: HandlerRegistry,
    ):
        self._settings = settings
        self._handlers = handlers
        self._store = KeyValueStore(session_factory)
        self._lock = RunLock(self._store)
        self._recovery = RecoveryStore(self._store, ttl_seconds=settings.checkpoint_ttl_seconds)
        self._progress = ProgressTracker(
            self._store,
            ttl_seconds=settings.progress_ttl_seconds,
            sample_window=settings.progress_sample_window,
            stall_threshold_seconds=settings.stall_threshold_seconds,
        )
        self._processor = BatchProcessor(client, handlers)
        self._audit = SyncAuditLog(session_factory)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _validate_fresh_run(self, entity: SyncEntity, options: TickOptions) -> None:
        if not self._handlers.supports(entity, options.direction):
            raise ValueError(f"No sync handler registered for {entity.value} ({options.direction.value})")
        if options.batch_size is not None and options.batch_size <= 0:
            raise ValueError("batch_size must be > 0")

    def _fresh_checkpoint(self, entity: SyncEntity, run_id: str, options: TickOptions) -> Checkpoint:
        now = self._now()
        return Checkpoint(
            entity=entity,
            run_id=run_id,
            direction=options.direction,
            offset=0,
            batch_index=0,
            processed=0,
            errors=0,
            total=None,
            filters=dict(options.filters or {}),
            batch_size=self._settings.clamp_batch_size(entity.value, options.batch_size),
            started_at=now,
            created_at=now,
            updated_at=now,
        )

    def start(self, entity: SyncEntity, options: TickOptions | None = None) -> TickResult:
        """Begin a run; rejected as busy while any live lock exists for the entity."""
        options = options or TickOptions()
        if not options.force_restart and self._lock.is_held(entity):
            logger.info("Sync start rejected, entity=%s already has an active run", entity.value)
            return TickResult(outcome=TickOutcome.BUSY, entity=entity)
        return self.tick(entity, options)

    def tick(self, entity: SyncEntity, options: TickOptions | None = None) -> TickResult:
        options = options or TickOptions()
        if options.force_restart:
            self._validate_fresh_run(entity, options)
            info = self._lock.info(entity)
            if info is not None and info.in_tick:
                logger.warning(
                    "Force restart refused entity=%s, run_id=%s has a tick in flight", entity.value, info.holder
                )
                return TickResult(outcome=TickOutcome.BUSY, entity=entity)
            self._reset(entity)

        cancelled = self._handle_cancellation(entity)
        if cancelled is not None:
            return cancelled

        try:
            stored = self._recovery.load(entity)
        except InvariantViolationError as exc:
            logger.error("Unusable checkpoint entity=%s: %s", entity.value, exc)
            return TickResult(
                outcome=TickOutcome.FAILED,
                entity=entity,
                snapshot=self._progress.read(entity),
                error_kind=exc.kind,
                error_message=str(exc),
            )

        if stored is None:
            self._validate_fresh_run(entity, options)
            run_id = uuid4().hex
        else:
            run_id = stored.run_id

        if not self._lock.acquire(entity, run_id, self._settings.lock_ttl_seconds):
            return TickResult(outcome=TickOutcome.BUSY, entity=entity)

        checkpoint: Checkpoint | None = None
        is_fresh = False
        try:
            checkpoint = self._recovery.load(entity)
            if checkpoint is None:
                checkpoint = self._fresh_checkpoint(entity, run_id, options)
                is_fresh = True
                logger.info(
                    "Sync run started entity=%s run_id=%s direction=%s batch_size=%s",
                    entity.value,
                    run_id,
                    checkpoint.direction.value,
                    checkpoint.batch_size,
                )
            elif checkpoint.run_id != run_id:
                self._lock.release(entity, run_id)
                return TickResult(outcome=TickOutcome.BUSY, entity=entity)
            else:
                self._prepare_resume(entity, checkpoint, options)

            result = self._processor.process(entity, checkpoint, checkpoint.filters, session=options.session)
            if result.checkpoint.offset < checkpoint.offset:
                raise InvariantViolationError(
                    f"Offset regressed from {checkpoint.offset} to {result.checkpoint.offset} for {entity.value}"
                )

            if not self._lock.confirm(entity, run_id, self._settings.lock_ttl_seconds):
                logger.warning(
                    "Sync lock lost mid-batch entity=%s run_id=%s, discarding batch at offset %s",
                    entity.value,
                    run_id,
                    checkpoint.offset,
                )
                return TickResult(outcome=TickOutcome.BUSY, entity=entity, run_id=run_id)

            self._audit.record_failures(run_id, entity, result.failed)
            snapshot = self._progress.record(
                entity,
                ProgressUpdate(
                    run_id=run_id,
                    status=RunStatus.RUNNING,
                    processed=result.checkpoint.processed,
                    errors=result.checkpoint.errors,
                    total=result.checkpoint.total,
                    current_item_label=current_label(result),
                    started_at=result.checkpoint.started_at,
                ),
            )
            self._recovery.save(entity, result.checkpoint)
        except (ErpClientError, InvariantViolationError) as exc:
            return self._fail(entity, run_id, checkpoint, persist=is_fresh, kind=exc.kind, message=str(exc))
        except Exception as exc:
            logger.exception("Unexpected error during sync tick entity=%s run_id=%s", entity.value, run_id)
            return self._fail(
                entity,
                run_id,
                checkpoint,
                persist=is_fresh,
                kind=INTERNAL_ERROR_KIND,
                message=str(exc) or exc.__class__.__name__,
            )

        if snapshot.status == RunStatus.CANCELLED:
            # only after the lock lapsed past confirm() and another tick cancelled the run
            self._lock.release(entity, run_id)
            return TickResult(outcome=TickOutcome.CANCELLED, entity=entity, snapshot=snapshot, run_id=run_id)

        if not result.has_more:
            return self._complete(entity, result.checkpoint)

        if not self._lock.renew(entity, run_id, self._settings.lock_ttl_seconds):
            logger.warning("Sync lock lost during tick entity=%s run_id=%s", entity.value, run_id)
        return TickResult(outcome=TickOutcome.RUNNING, entity=entity, snapshot=snapshot, run_id=run_id)

    def _prepare_resume(self, entity: SyncEntity, checkpoint: Checkpoint, options: TickOptions) -> None:
        if options.filters is not None and dict(options.filters) != checkpoint.filters:
            logger.warning("Ignoring new filters for resumed run entity=%s run_id=%s", entity.value, checkpoint.run_id)
        current = self._progress.read(entity)
        if current.run_id == checkpoint.run_id and current.status in TERMINAL_STATUSES:
            # explicit resume of a cancelled or failed run
            self._progress.clear(entity)
            logger.info(
                "Resuming %s run entity=%s run_id=%s offset=%s",
                current.status.value,
                entity.value,
                checkpoint.run_id,
                checkpoint.offset,
            )

    def _handle_cancellation(self, entity: SyncEntity) -> TickResult | None:
        current = self._progress.read(entity)
        if not current.cancel_requested or current.run_id is None:
            return None

        run_id = current.run_id
        info = self._lock.info(entity)
        if info is not None and info.holder == run_id and info.in_tick:
            # cancellation takes effect on the first tick after the in-flight one
            return TickResult(outcome=TickOutcome.BUSY, entity=entity)

        snapshot = self._progress.record(entity, ProgressUpdate(run_id=run_id, status=RunStatus.CANCELLED))
        self._lock.release(entity, run_id)
        direction = self._stored_direction(entity)
        self._audit.record_run(
            run_id=run_id,
            entity=entity,
            direction=direction,
            status=RunStatus.CANCELLED,
            processed=snapshot.processed,
            errors=snapshot.errors,
            total=snapshot.total,
            started_at=snapshot.started_at,
            message="Cancelled by operator",
        )
        logger.info("Sync run cancelled entity=%s run_id=%s processed=%s", entity.value, run_id, snapshot.processed)
        return TickResult(outcome=TickOutcome.CANCELLED, entity=entity, snapshot=snapshot, run_id=run_id)

    def _stored_direction(self, entity: SyncEntity) -> SyncDirection:
        try:
            checkpoint = self._recovery.load(entity)
        except InvariantViolationError:
            checkpoint = None
        return SyncDirection.ERP_TO_STORE if checkpoint is None else checkpoint.direction

    def _complete(self, entity: SyncEntity, checkpoint: Checkpoint) -> TickResult:
        total = checkpoint.total if checkpoint.total is not None else checkpoint.processed
        snapshot = self._progress.record(
            entity,
            ProgressUpdate(
                run_id=checkpoint.run_id,
                status=RunStatus.COMPLETED,
                processed=checkpoint.processed,
                errors=checkpoint.errors,
                total=total,
            ),
        )
        if snapshot.status == RunStatus.CANCELLED:
            self._lock.release(entity, checkpoint.run_id)
            return TickResult(outcome=TickOutcome.CANCELLED, entity=entity, snapshot=snapshot, run_id=checkpoint.run_id)

        self._recovery.clear(entity)
        self._lock.release(entity, checkpoint.run_id)
        self._audit.record_run(
            run_id=checkpoint.run_id,
            entity=entity,
            direction=checkpoint.direction,
            status=RunStatus.COMPLETED,
            processed=checkpoint.processed,
            errors=checkpoint.errors,
            total=total,
            started_at=checkpoint.started_at,
        )
        logger.info(
            "Sync run completed entity=%s run_id=%s processed=%s errors=%s",
            entity.value,
            checkpoint.run_id,
            checkpoint.processed,
            checkpoint.errors,
        )
        return TickResult(outcome=TickOutcome.COMPLETED, entity=entity, snapshot=snapshot, run_id=checkpoint.run_id)

    def _fail(
        self,
        entity: SyncEntity,
        run_id: str,
        checkpoint: Checkpoint | None,
        *,
        persist: bool,
        kind: str,
        message: str,
    ) -> TickResult:
        logger.error("Sync tick failed entity=%s run_id=%s kind=%s: %s", entity.value, run_id, kind, message)
        if persist and checkpoint is not None:
            self._recovery.save(entity, checkpoint)
        snapshot = self._progress.record(
            entity,
            ProgressUpdate(
                run_id=run_id,
                status=RunStatus.FAILED,
                processed=None if checkpoint is None else checkpoint.processed,
                errors=None if checkpoint is None else checkpoint.errors,
                total=None if checkpoint is None else checkpoint.total,
                started_at=None if checkpoint is None else checkpoint.started_at,
                last_error=f"{kind}: {message}",
            ),
        )
        self._lock.release(entity, run_id)
        self._audit.record_run(
            run_id=run_id,
            entity=entity,
            direction=SyncDirection.ERP_TO_STORE if checkpoint is None else checkpoint.direction,
            status=RunStatus.FAILED,
            processed=snapshot.processed,
            errors=snapshot.errors,
            total=snapshot.total,
            started_at=snapshot.started_at,
            message=f"{kind}: {message}",
        )
        return TickResult(
            outcome=TickOutcome.FAILED,
            entity=entity,
            snapshot=snapshot,
            run_id=run_id,
            error_kind=kind,
            error_message=message,
        )

    def _reset(self, entity: SyncEntity) -> None:
        logger.warning("Force restart requested entity=%s, discarding checkpoint and lock", entity.value)
        self._recovery.clear(entity)
        self._lock.force_release(entity)
        self._progress.clear(entity)

    def request_cancel(self, entity: SyncEntity) -> bool:
        return self._progress.request_cancel(entity)

    def read_progress(self, entity: SyncEntity) -> ProgressSnapshot:
        return self._progress.read(entity)

    def is_stalled(self, snapshot: ProgressSnapshot) -> bool:
        return self._progress.is_stalled(snapshot)

    def acknowledge(self, entity: SyncEntity) -> bool:
        snapshot = self._progress.read(entity)
        if snapshot.status not in TERMINAL_STATUSES:
            return False
        self._progress.clear(entity)
        return True

    def pending_runs(self) -> list[tuple[Checkpoint, str]]:
        return [(checkpoint, describe(checkpoint)) for checkpoint in self._recovery.pending()]

    def lock_info(self, entity: SyncEntity) -> LockInfo | None:
        return self._lock.info(entity)

    def list_errors(self, run_id: str, *, limit: int = 100, offset: int = 0) -> list[ErrorRecordSnapshot]:
        return self._audit.list_errors(run_id, limit=limit, offset=offset)

    def history(self, entity: SyncEntity | None = None, limit: int | None = None) -> list[HistorySnapshot]:
        bounded = min(limit or self._settings.history_limit, self._settings.max_history_limit)
        return self._audit.history(entity=entity, limit=bounded)

    def summary(self, days: int | None = None, entity: SyncEntity | None = None) -> RunSummary:
        return self._audit.summary(days=days or self._settings.summary_window_days, entity=entity)

    def purge_expired(self) -> PurgeReport:
        """Drop lapsed key-value state and item errors older than the retention window."""
        cutoff = self._now() - timedelta(days=self._settings.error_retention_days)
        report = PurgeReport(
            kv_entries=self._store.purge_expired(),
            error_records=self._audit.purge_errors_before(cutoff),
        )
        if report.kv_entries or report.error_records:
            logger.info(
                "Purged expired sync state kv_entries=%s error_records=%s", report.kv_entries, report.error_records
            )
        return report


def snapshot_to_dict(snapshot: ProgressSnapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload.pop("samples", None)
    payload["entity"] = snapshot.entity.value
    payload["status"] = snapshot.status.value
    return payload


def checkpoint_to_dict(checkpoint: Checkpoint) -> dict[str, Any]:
    payload = asdict(checkpoint)
    payload["entity"] = checkpoint.entity.value
    payload["direction"] = checkpoint.direction.value
    return payload
