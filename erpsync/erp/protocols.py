from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from erpsync.db.models import SyncDirection, SyncEntity


@dataclass(frozen=True, slots=True)
class ErpItem:
    reference: str
    data: Mapping[str, Any]
    label: str | None = None


@dataclass(frozen=True, slots=True)
class ErpPage:
    """One normalized page of entities. ``total`` is the ERP-side count when it reports one."""

    items: Sequence[ErpItem]
    total: int | None = None


@dataclass(frozen=True, slots=True)
class ItemOutcome:
    success: bool
    label: str | None = None
    summary: str | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, label: str | None = None, summary: str | None = None) -> "ItemOutcome":
        return cls(success=True, label=label, summary=summary)

    @classmethod
    def failed(cls, reason: str, label: str | None = None) -> "ItemOutcome":
        return cls(success=False, label=label, reason=reason)


class ErpClient(Protocol):
    def fetch_page(
        self,
        entity: SyncEntity,
        offset: int,
        batch_size: int,
        filters: Mapping[str, Any],
        session: str | None,
    ) -> ErpPage:
        ...


class EntityHandler(Protocol):
    def apply(self, item: ErpItem) -> ItemOutcome:
        ...


@dataclass
class HandlerRegistry:
    handlers: dict[tuple[SyncEntity, SyncDirection], EntityHandler] = field(default_factory=dict)

    def register(self, entity: SyncEntity, direction: SyncDirection, handler: EntityHandler) -> None:
        self.handlers[(entity, direction)] = handler

    def supports(self, entity: SyncEntity, direction: SyncDirection) -> bool:
        return (entity, direction) in self.handlers

    def get(self, entity: SyncEntity, direction: SyncDirection) -> EntityHandler:
        try:
            return self.handlers[(entity, direction)]
        except KeyError as exc:
            raise ValueError(f"No sync handler registered for {entity.value} ({direction.value})") from exc
