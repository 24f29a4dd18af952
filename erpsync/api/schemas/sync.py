from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from erpsync.db.models import SyncDirection


class TickRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    direction: SyncDirection = SyncDirection.ERP_TO_STORE
    filters: dict[str, Any] | None = None
    batch_size: int | None = Field(default=None, ge=1)
    force_restart: bool = False
    session: str | None = Field(default=None, max_length=512)


class ProgressResponse(BaseModel):
    entity: str
    run_id: str | None
    status: str
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
    stalled: bool = False


class TickResponse(BaseModel):
    outcome: str
    entity: str
    run_id: str | None
    progress: ProgressResponse | None
    error_kind: str | None
    error_message: str | None


class CancelResponse(BaseModel):
    entity: str
    cancel_requested: bool


class AcknowledgeResponse(BaseModel):
    entity: str
    acknowledged: bool


class LockResponse(BaseModel):
    entity: str
    held: bool
    holder: str | None = None
    acquired_at: datetime | None = None
    renewed_at: datetime | None = None
    expires_at: datetime | None = None
    in_tick: bool = False
    age_seconds: float | None = None


class PendingRunResponse(BaseModel):
    entity: str
    run_id: str
    direction: str
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
    message: str


class ErrorRecordResponse(BaseModel):
    id: int
    run_id: str
    entity: str
    item_position: int
    item_reference: str
    message: str
    occurred_at: datetime


class HistoryEntryResponse(BaseModel):
    id: int
    run_id: str
    entity: str
    direction: str
    status: str
    processed: int
    errors: int
    total: int | None
    message: str | None
    started_at: datetime | None
    finished_at: datetime


class SummaryResponse(BaseModel):
    window_days: int
    entity: str | None
    total_runs: int
    runs_by_status: dict[str, int]
    success_rate: float
    average_duration_seconds: float | None
    total_items: int
    average_items_per_run: float
    error_count: int
    errors_by_type: dict[str, int]


class PurgeResponse(BaseModel):
    kv_entries: int
    error_records: int
