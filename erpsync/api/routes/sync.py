from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from erpsync.api.schemas.sync import (
    AcknowledgeResponse,
    CancelResponse,
    ErrorRecordResponse,
    HistoryEntryResponse,
    LockResponse,
    PendingRunResponse,
    ProgressResponse,
    PurgeResponse,
    SummaryResponse,
    TickRequest,
    TickResponse,
)
from erpsync.core.config import get_settings
from erpsync.db.models import SyncEntity
from erpsync.db.session import get_session_factory
from erpsync.sync.audit import error_record_to_dict, history_to_dict, summary_to_dict
from erpsync.sync.orchestrator import SyncOrchestrator, checkpoint_to_dict, snapshot_to_dict
from erpsync.sync.types import ProgressSnapshot, TickOptions, TickResult

router = APIRouter(prefix="/sync", tags=["sync"])


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return SyncOrchestrator(
        settings=get_settings(),
        session_factory=get_session_factory(),
        client=request.app.state.erp_client,
        handlers=request.app.state.handlers,
    )


def _progress_response(service: SyncOrchestrator, snapshot: ProgressSnapshot) -> ProgressResponse:
    return ProgressResponse.model_validate({**snapshot_to_dict(snapshot), "stalled": service.is_stalled(snapshot)})


def _tick_response(service: SyncOrchestrator, result: TickResult) -> TickResponse:
    return TickResponse(
        outcome=result.outcome.value,
        entity=result.entity.value,
        run_id=result.run_id,
        progress=None if result.snapshot is None else _progress_response(service, result.snapshot),
        error_kind=result.error_kind,
        error_message=result.error_message,
    )


def _options(request: TickRequest) -> TickOptions:
    return TickOptions(
        direction=request.direction,
        filters=request.filters,
        batch_size=request.batch_size,
        force_restart=request.force_restart,
        session=request.session,
    )


@router.post("/{entity}/tick", response_model=TickResponse)
def tick(entity: SyncEntity, request: TickRequest, service: SyncOrchestrator = Depends(get_orchestrator)) -> TickResponse:
    try:
        result = service.tick(entity, _options(request))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _tick_response(service, result)


@router.post("/{entity}/start", response_model=TickResponse)
def start(entity: SyncEntity, request: TickRequest, service: SyncOrchestrator = Depends(get_orchestrator)) -> TickResponse:
    try:
        result = service.start(entity, _options(request))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _tick_response(service, result)


@router.post("/{entity}/cancel", response_model=CancelResponse)
def request_cancel(entity: SyncEntity, service: SyncOrchestrator = Depends(get_orchestrator)) -> CancelResponse:
    return CancelResponse(entity=entity.value, cancel_requested=service.request_cancel(entity))


@router.post("/{entity}/acknowledge", response_model=AcknowledgeResponse)
def acknowledge(entity: SyncEntity, service: SyncOrchestrator = Depends(get_orchestrator)) -> AcknowledgeResponse:
    return AcknowledgeResponse(entity=entity.value, acknowledged=service.acknowledge(entity))


@router.get("/{entity}/progress", response_model=ProgressResponse)
def read_progress(entity: SyncEntity, service: SyncOrchestrator = Depends(get_orchestrator)) -> ProgressResponse:
    return _progress_response(service, service.read_progress(entity))


@router.get("/{entity}/lock", response_model=LockResponse)
def lock_info(entity: SyncEntity, service: SyncOrchestrator = Depends(get_orchestrator)) -> LockResponse:
    info = service.lock_info(entity)
    if info is None:
        return LockResponse(entity=entity.value, held=False)
    return LockResponse(
        entity=entity.value,
        held=True,
        holder=info.holder,
        acquired_at=info.acquired_at,
        renewed_at=info.renewed_at,
        expires_at=info.expires_at,
        in_tick=info.in_tick,
        age_seconds=info.age_seconds,
    )


@router.get("/pending", response_model=list[PendingRunResponse])
def pending_runs(service: SyncOrchestrator = Depends(get_orchestrator)) -> list[PendingRunResponse]:
    return [
        PendingRunResponse.model_validate({**checkpoint_to_dict(checkpoint), "message": message})
        for checkpoint, message in service.pending_runs()
    ]


@router.get("/history", response_model=list[HistoryEntryResponse])
def history(
    entity: SyncEntity | None = None,
    limit: int | None = Query(default=None, ge=1, le=200),
    service: SyncOrchestrator = Depends(get_orchestrator),
) -> list[HistoryEntryResponse]:
    return [HistoryEntryResponse.model_validate(history_to_dict(item)) for item in service.history(entity, limit)]


@router.get("/runs/{run_id}/errors", response_model=list[ErrorRecordResponse])
def list_errors(
    run_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    service: SyncOrchestrator = Depends(get_orchestrator),
) -> list[ErrorRecordResponse]:
    return [
        ErrorRecordResponse.model_validate(error_record_to_dict(item))
        for item in service.list_errors(run_id, limit=limit, offset=offset)
    ]


@router.get("/summary", response_model=SummaryResponse)
def summary(
    days: int | None = Query(default=None, ge=1, le=365),
    entity: SyncEntity | None = None,
    service: SyncOrchestrator = Depends(get_orchestrator),
) -> SummaryResponse:
    return SummaryResponse.model_validate(summary_to_dict(service.summary(days, entity)))


@router.post("/maintenance/purge", response_model=PurgeResponse)
def purge_expired(service: SyncOrchestrator = Depends(get_orchestrator)) -> PurgeResponse:
    report = service.purge_expired()
    return PurgeResponse(kv_entries=report.kv_entries, error_records=report.error_records)
