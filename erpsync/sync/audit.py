from __future__ import annotations

from collections import Counter
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from erpsync.db.models import RunStatus, SyncDirection, SyncEntity, SyncErrorRecord, SyncHistoryEntry
from erpsync.sync.types import ErrorRecordSnapshot, HistorySnapshot, ItemResult, RunSummary

MAX_REFERENCE_LENGTH = 255


class SyncAuditLog:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def record_failures(self, run_id: str, entity: SyncEntity, failures: Sequence[ItemResult]) -> int:
        """Append one error row per failed item; positions already recorded for the run are skipped."""
        if not failures:
            return 0
        now = self._now()
        positions = [item.position for item in failures]
        with self._session_factory() as session:
            existing = set(
                session.scalars(
                    select(SyncErrorRecord.item_position).where(
                        SyncErrorRecord.run_id == run_id,
                        SyncErrorRecord.item_position.in_(positions),
                    )
                ).all()
            )
            fresh = [item for item in failures if item.position not in existing]
            for item in fresh:
                session.add(
                    SyncErrorRecord(
                        run_id=run_id,
                        entity=entity,
                        item_position=item.position,
                        item_reference=item.reference[:MAX_REFERENCE_LENGTH],
                        message=item.outcome.reason or "unknown error",
                        occurred_at=now,
                    )
                )
            session.commit()
            return len(fresh)

    def list_errors(self, run_id: str, *, limit: int = 100, offset: int = 0) -> list[ErrorRecordSnapshot]:
        bounded_limit = max(1, min(limit, 1000))
        with self._session_factory() as session:
            rows = session.scalars(
                select(SyncErrorRecord)
                .where(SyncErrorRecord.run_id == run_id)
                .order_by(SyncErrorRecord.item_position.asc())
                .offset(max(0, offset))
                .limit(bounded_limit)
            ).all()
            return [self._error_snapshot(row) for row in rows]

    def purge_errors_before(self, cutoff: datetime) -> int:
        with self._session_factory() as session:
            result = session.execute(delete(SyncErrorRecord).where(SyncErrorRecord.occurred_at < cutoff))
            session.commit()
            return int(result.rowcount or 0)

    def record_run(
        self,
        *,
        run_id: str,
        entity: SyncEntity,
        direction: SyncDirection,
        status: RunStatus,
        processed: int,
        errors: int,
        total: int | None,
        started_at: datetime | None,
        message: str | None = None,
    ) -> HistorySnapshot:
        with self._session_factory() as session:
            row = SyncHistoryEntry(
                run_id=run_id,
                entity=entity,
                direction=direction,
                status=status,
                processed=processed,
                errors=errors,
                total=total,
                message=message,
                started_at=started_at,
                finished_at=self._now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._history_snapshot(row)

    def history(self, *, entity: SyncEntity | None = None, limit: int = 10) -> list[HistorySnapshot]:
        bounded_limit = max(1, min(limit, 200))
        with self._session_factory() as session:
            stmt = select(SyncHistoryEntry).order_by(SyncHistoryEntry.finished_at.desc(), SyncHistoryEntry.id.desc())
            if entity is not None:
                stmt = stmt.where(SyncHistoryEntry.entity == entity)
            rows = session.scalars(stmt.limit(bounded_limit)).all()
            return [self._history_snapshot(row) for row in rows]

    def summary(self, *, days: int = 7, entity: SyncEntity | None = None) -> RunSummary:
        """Aggregate finished runs and item errors recorded in the last ``days`` days."""
        window_days = max(1, int(days))
        cutoff = self._now() - timedelta(days=window_days)
        runs_by_status: dict[str, int] = {}
        durations: list[float] = []
        total_items = 0
        with self._session_factory() as session:
            runs_stmt = select(SyncHistoryEntry).where(SyncHistoryEntry.finished_at >= cutoff)
            errors_stmt = select(SyncErrorRecord.message).where(SyncErrorRecord.occurred_at >= cutoff)
            if entity is not None:
                runs_stmt = runs_stmt.where(SyncHistoryEntry.entity == entity)
                errors_stmt = errors_stmt.where(SyncErrorRecord.entity == entity)

            rows = session.scalars(runs_stmt).all()
            for row in rows:
                runs_by_status[row.status.value] = runs_by_status.get(row.status.value, 0) + 1
                total_items += row.processed
                started_at = self._coerce_utc(row.started_at)
                finished_at = self._coerce_utc(row.finished_at)
                if started_at is not None and finished_at is not None:
                    durations.append(max(0.0, (finished_at - started_at).total_seconds()))
            messages = session.scalars(errors_stmt).all()

        total_runs = len(rows)
        completed = runs_by_status.get(RunStatus.COMPLETED.value, 0)
        by_type = Counter(error_type(message) for message in messages)
        return RunSummary(
            window_days=window_days,
            entity=entity,
            total_runs=total_runs,
            runs_by_status=runs_by_status,
            success_rate=round(completed / total_runs * 100, 2) if total_runs else 0.0,
            average_duration_seconds=round(sum(durations) / len(durations), 2) if durations else None,
            total_items=total_items,
            average_items_per_run=round(total_items / total_runs, 2) if total_runs else 0.0,
            error_count=len(messages),
            errors_by_type=dict(by_type.most_common()),
        )

    def _error_snapshot(self, row: SyncErrorRecord) -> ErrorRecordSnapshot:
        return ErrorRecordSnapshot(
            id=row.id,
            run_id=row.run_id,
            entity=row.entity,
            item_position=row.item_position,
            item_reference=row.item_reference,
            message=row.message,
            occurred_at=self._coerce_utc(row.occurred_at),  # type: ignore[arg-type]
        )

    def _history_snapshot(self, row: SyncHistoryEntry) -> HistorySnapshot:
        return HistorySnapshot(
            id=row.id,
            run_id=row.run_id,
            entity=row.entity,
            direction=row.direction,
            status=row.status,
            processed=row.processed,
            errors=row.errors,
            total=row.total,
            message=row.message,
            started_at=self._coerce_utc(row.started_at),
            finished_at=self._coerce_utc(row.finished_at),  # type: ignore[arg-type]
        )


def error_record_to_dict(snapshot: ErrorRecordSnapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload["entity"] = snapshot.entity.value
    return payload


def history_to_dict(snapshot: HistorySnapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload["entity"] = snapshot.entity.value
    payload["direction"] = snapshot.direction.value
    payload["status"] = snapshot.status.value
    return payload


def error_type(message: str) -> str:
    """Classify an error message by its ``kind:`` prefix, or else its first word."""
    head, separator, _ = message.partition(":")
    head = head.strip()
    if separator and head and " " not in head:
        return head.lower()
    words = message.split()
    return words[0].lower() if words else "unknown"


def summary_to_dict(summary: RunSummary) -> dict[str, Any]:
    payload = asdict(summary)
    payload["entity"] = None if summary.entity is None else summary.entity.value
    return payload
