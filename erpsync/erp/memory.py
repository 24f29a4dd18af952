from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from erpsync.db.models import SyncEntity
from erpsync.erp.errors import ErpClientError
from erpsync.erp.protocols import ErpItem, ErpPage, ItemOutcome


class InMemoryErpClient:
    """ERP client backed by fixed item lists, for local drivers and benchmarks.

    ``failures`` maps ``(entity, offset)`` to an error raised once when that
    page is requested, which is how a flaky ERP is simulated.
    """

    def __init__(
        self,
        items: Mapping[SyncEntity, Sequence[ErpItem]],
        *,
        report_total: bool = True,
        failures: Mapping[tuple[SyncEntity, int], ErpClientError] | None = None,
    ):
        self._items = {entity: list(values) for entity, values in items.items()}
        self._report_total = report_total
        self._failures = dict(failures or {})
        self._lock = threading.Lock()
        self.requests: list[tuple[SyncEntity, int, int]] = []

    def fetch_page(
        self,
        entity: SyncEntity,
        offset: int,
        batch_size: int,
        filters: Mapping[str, Any],
        session: str | None,
    ) -> ErpPage:
        with self._lock:
            self.requests.append((entity, offset, batch_size))
            error = self._failures.pop((entity, offset), None)
        if error is not None:
            raise error

        items = [item for item in self._items.get(entity, []) if _matches(item, filters)]
        total = len(items) if self._report_total else None
        return ErpPage(items=items[offset : offset + batch_size], total=total)


def _matches(item: ErpItem, filters: Mapping[str, Any]) -> bool:
    return all(item.data.get(name) == expected for name, expected in filters.items())


@dataclass
class RecordingHandler:
    """Handler that remembers applied references and fails the configured ones."""

    fail_references: set[str] = field(default_factory=set)
    applied: list[str] = field(default_factory=list)

    def apply(self, item: ErpItem) -> ItemOutcome:
        if item.reference in self.fail_references:
            raise ValueError(f"rejected {item.reference}")
        self.applied.append(item.reference)
        return ItemOutcome.ok(label=item.label, summary=f"synced {item.reference}")


def make_items(count: int, *, prefix: str = "SKU") -> list[ErpItem]:
    return [
        ErpItem(reference=f"{prefix}-{index:05d}", data={"index": index}, label=f"{prefix} #{index}")
        for index in range(count)
    ]
