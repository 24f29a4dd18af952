from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from erpsync.db.models import RunStatus, SyncDirection, SyncEntity
from erpsync.erp.protocols import ItemOutcome


class TickOutcome(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    BUSY = "busy"
    FAILED = "failed"


@dataclass(slots=True)
class Checkpoint:
    entity: SyncEntity
    run_id: str
    direction: SyncDirection
    offset: int
    batch_index: int
    processed: int
    errors: int
    total: int | None
    filters: dict[str, Any]
    batch_size: int
    started_at: datetime
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ProgressSnapshot:
    entity: SyncEntity
    run_id: str | None
    status: RunStatus
    percentage: float
    processed: int
    errors: int
    total: int | None
    current_item_label: str | None
    started_at: datetime | None
    updated_at: datetime | None
    elapsed_seconds: float | None
    estimated_remaining_seconds: float | None
    throughput_per_second: float | None
    cancel_requested: bool
    last_error: str | None
    samples: list[tuple[float, int]] = field(default_factory=list)


@dataclass(slots=True)
class ProgressUpdate:
    """Partial progress write; ``None`` fields keep the stored value."""

    run_id: str
    status: RunStatus
    processed: int | None = None
    errors: int | None = None
    total: int | None = None
    current_item_label: str | None = None
    percentage: float | None = None
    started_at: datetime | None = None
    last_error: str | None = None


@dataclass(slots=True)
class LockInfo:
    entity: SyncEntity
    holder: str
    acquired_at: datetime
    renewed_at: datetime
    expires_at: datetime | None
    in_tick: bool
    age_seconds: float


@dataclass(slots=True)
class ItemResult:
    position: int
    reference: str
    outcome: ItemOutcome


@dataclass(slots=True)
class BatchResult:
    checkpoint: Checkpoint
    items: list[ItemResult]
    has_more: bool

    @property
    def failed(self) -> list[ItemResult]:
        return [item for item in self.items if not item.outcome.success]


@dataclass(slots=True)
class ErrorRecordSnapshot:
    id: int
    run_id: str
    entity: SyncEntity
    item_position: int
    item_reference: str
    message: str
    occurred_at: datetime


@dataclass(slots=True)
class HistorySnapshot:
    id: int
    run_id: str
    entity: SyncEntity
    direction: SyncDirection
    status: RunStatus
    processed: int
    errors: int
    total: int | None
    message: str | None
    started_at: datetime | None
    finished_at: datetime


@dataclass(slots=True)
class RunSummary:
    """Aggregated run metrics over the trailing ``window_days``."""

    window_days: int
    entity: SyncEntity | None
    total_runs: int
    runs_by_status: dict[str, int]
    success_rate: float
    average_duration_seconds: float | None
    total_items: int
    average_items_per_run: float
    error_count: int
    errors_by_type: dict[str, int]


@dataclass(slots=True)
class PurgeReport:
    kv_entries: int
    error_records: int


@dataclass(slots=True)
class TickOptions:
    direction: SyncDirection = SyncDirection.ERP_TO_STORE
    filters: dict[str, Any] | None = None
    batch_size: int | None = None
    force_restart: bool = False
    session: str | None = None


@dataclass(slots=True)
class TickResult:
    outcome: TickOutcome
    entity: SyncEntity
    snapshot: ProgressSnapshot | None = None
    run_id: str | None = None
    error_kind: str | None = None
    error_message: str | None = None


def _dt_out(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


def _dt_in(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def checkpoint_to_payload(checkpoint: Checkpoint) -> dict[str, Any]:
    return {
        "entity": checkpoint.entity.value,
        "run_id": checkpoint.run_id,
        "direction": checkpoint.direction.value,
        "offset": checkpoint.offset,
        "batch_index": checkpoint.batch_index,
        "processed": checkpoint.processed,
        "errors": checkpoint.errors,
        "total": checkpoint.total,
        "filters": dict(checkpoint.filters),
        "batch_size": checkpoint.batch_size,
        "started_at": _dt_out(checkpoint.started_at),
        "created_at": _dt_out(checkpoint.created_at),
        "updated_at": _dt_out(checkpoint.updated_at),
    }


def checkpoint_from_payload(payload: dict[str, Any]) -> Checkpoint:
    return Checkpoint(
        entity=SyncEntity(payload["entity"]),
        run_id=str(payload["run_id"]),
        direction=SyncDirection(payload["direction"]),
        offset=int(payload["offset"]),
        batch_index=int(payload["batch_index"]),
        processed=int(payload.get("processed", 0)),
        errors=int(payload.get("errors", 0)),
        total=payload.get("total"),
        filters=dict(payload.get("filters") or {}),
        batch_size=int(payload["batch_size"]),
        started_at=_dt_in(payload["started_at"]),  # type: ignore[arg-type]
        created_at=_dt_in(payload["created_at"]),  # type: ignore[arg-type]
        updated_at=_dt_in(payload["updated_at"]),  # type: ignore[arg-type]
    )


def progress_to_payload(snapshot: ProgressSnapshot) -> dict[str, Any]:
    return {
        "entity": snapshot.entity.value,
        "run_id": snapshot.run_id,
        "status": snapshot.status.value,
        "percentage": snapshot.percentage,
        "processed": snapshot.processed,
        "errors": snapshot.errors,
        "total": snapshot.total,
        "current_item_label": snapshot.current_item_label,
        "started_at": _dt_out(snapshot.started_at),
        "updated_at": _dt_out(snapshot.updated_at),
        "elapsed_seconds": snapshot.elapsed_seconds,
        "estimated_remaining_seconds": snapshot.estimated_remaining_seconds,
        "throughput_per_second": snapshot.throughput_per_second,
        "cancel_requested": snapshot.cancel_requested,
        "last_error": snapshot.last_error,
        "samples": [[ts, processed] for ts, processed in snapshot.samples],
    }


def progress_from_payload(payload: dict[str, Any]) -> ProgressSnapshot:
    return ProgressSnapshot(
        entity=SyncEntity(payload["entity"]),
        run_id=payload.get("run_id"),
        status=RunStatus(payload["status"]),
        percentage=float(payload.get("percentage", 0.0)),
        processed=int(payload.get("processed", 0)),
        errors=int(payload.get("errors", 0)),
        total=payload.get("total"),
        current_item_label=payload.get("current_item_label"),
        started_at=_dt_in(payload.get("started_at")),
        updated_at=_dt_in(payload.get("updated_at")),
        elapsed_seconds=payload.get("elapsed_seconds"),
        estimated_remaining_seconds=payload.get("estimated_remaining_seconds"),
        throughput_per_second=payload.get("throughput_per_second"),
        cancel_requested=bool(payload.get("cancel_requested", False)),
        last_error=payload.get("last_error"),
        samples=[(float(ts), int(processed)) for ts, processed in payload.get("samples") or []],
    )


def idle_snapshot(entity: SyncEntity) -> ProgressSnapshot:
    return ProgressSnapshot(
        entity=entity,
        run_id=None,
        status=RunStatus.IDLE,
        percentage=0.0,
        processed=0,
        errors=0,
        total=None,
        current_item_label=None,
        started_at=None,
        updated_at=None,
        elapsed_seconds=None,
        estimated_remaining_seconds=None,
        throughput_per_second=None,
        cancel_requested=False,
        last_error=None,
    )
