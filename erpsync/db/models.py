from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class SyncEntity(str, Enum):
    PRODUCTS = "products"
    CUSTOMERS = "customers"
    ORDERS = "orders"


class SyncDirection(str, Enum):
    ERP_TO_STORE = "erp_to_store"
    STORE_TO_ERP = "store_to_erp"


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.CANCELLED, RunStatus.FAILED})


class KeyValueEntry(Base):
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(191), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON(none_as_null=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("ix_kv_entries_expires_at", "expires_at"),)


class SyncErrorRecord(Base):
    __tablename__ = "sync_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity: Mapped[SyncEntity] = mapped_column(
        SAEnum(SyncEntity, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    item_position: Mapped[int] = mapped_column(Integer, nullable=False)
    item_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("run_id", "item_position", name="uq_sync_errors_run_position"),
        Index("ix_sync_errors_entity_occurred", "entity", "occurred_at"),
    )


class SyncHistoryEntry(Base):
    __tablename__ = "sync_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity: Mapped[SyncEntity] = mapped_column(
        SAEnum(SyncEntity, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    direction: Mapped[SyncDirection] = mapped_column(
        SAEnum(SyncDirection, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[RunStatus] = mapped_column(
        SAEnum(RunStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_sync_history_finished_id", "finished_at", "id"),
        Index("ix_sync_history_entity_finished", "entity", "finished_at"),
    )
