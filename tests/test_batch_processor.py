from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from erpsync.db.models import SyncDirection, SyncEntity
from erpsync.erp.errors import TransportError
from erpsync.erp.memory import InMemoryErpClient, RecordingHandler, make_items
from erpsync.erp.protocols import ErpItem, ErpPage, HandlerRegistry, ItemOutcome
from erpsync.sync.batch import BatchProcessor, current_label
from erpsync.sync.errors import InvariantViolationError
from erpsync.sync.types import Checkpoint


def make_checkpoint(offset: int = 0, batch_size: int = 10, **overrides) -> Checkpoint:
    now = datetime.now(tz=timezone.utc)
    values = {
        "entity": SyncEntity.PRODUCTS,
        "run_id": "run-1",
        "direction": SyncDirection.ERP_TO_STORE,
        "offset": offset,
        "batch_index": offset // batch_size,
        "processed": offset,
        "errors": 0,
        "total": None,
        "filters": {},
        "batch_size": batch_size,
        "started_at": now,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return Checkpoint(**values)


def make_processor(client, handler) -> BatchProcessor:
    registry = HandlerRegistry()
    registry.register(SyncEntity.PRODUCTS, SyncDirection.ERP_TO_STORE, handler)
    return BatchProcessor(client, registry)


class OversizedClient:
    def fetch_page(
        self,
        entity: SyncEntity,
        offset: int,
        batch_size: int,
        filters: Mapping[str, Any],
        session: str | None,
    ) -> ErpPage:
        return ErpPage(items=make_items(batch_size + 1))


class SilentFailureHandler:
    def apply(self, item: ErpItem) -> ItemOutcome:
        return ItemOutcome(success=False)


def test_full_page_advances_checkpoint_and_reports_more() -> None:
    client = InMemoryErpClient({SyncEntity.PRODUCTS: make_items(25)})
    handler = RecordingHandler()
    processor = make_processor(client, handler)

    result = processor.process(SyncEntity.PRODUCTS, make_checkpoint(offset=10), {})

    assert result.has_more is True
    assert result.checkpoint.offset == 20
    assert result.checkpoint.batch_index == 2
    assert result.checkpoint.processed == 20
    assert result.checkpoint.total == 25
    assert [item.position for item in result.items] == list(range(10, 20))
    assert handler.applied == [f"SKU-{index:05d}" for index in range(10, 20)]
    assert current_label(result) == "SKU #19"


def test_short_page_ends_the_run() -> None:
    client = InMemoryErpClient({SyncEntity.PRODUCTS: make_items(25)}, report_total=False)
    processor = make_processor(client, RecordingHandler())

    result = processor.process(SyncEntity.PRODUCTS, make_checkpoint(offset=20), {})

    assert result.has_more is False
    assert len(result.items) == 5
    assert result.checkpoint.offset == 25
    assert result.checkpoint.total is None


def test_handler_exception_is_a_per_item_failure() -> None:
    client = InMemoryErpClient({SyncEntity.PRODUCTS: make_items(10)})
    handler = RecordingHandler(fail_references={"SKU-00003", "SKU-00007"})
    processor = make_processor(client, handler)

    result = processor.process(SyncEntity.PRODUCTS, make_checkpoint(), {})

    assert len(result.items) == 10
    assert result.checkpoint.errors == 2
    assert [item.position for item in result.failed] == [3, 7]
    assert result.failed[0].outcome.reason == "rejected SKU-00003"
    assert result.failed[0].outcome.label == "SKU #3"
    assert len(handler.applied) == 8


def test_failure_without_reason_gets_one() -> None:
    client = InMemoryErpClient({SyncEntity.PRODUCTS: [ErpItem(reference="A-1", data={})]})
    processor = make_processor(client, SilentFailureHandler())

    result = processor.process(SyncEntity.PRODUCTS, make_checkpoint(), {})

    assert result.failed[0].outcome.reason
    assert result.failed[0].outcome.label == "A-1"


def test_filters_are_passed_to_the_client() -> None:
    items = [ErpItem(reference=f"P-{index}", data={"active": index % 2 == 0}) for index in range(6)]
    client = InMemoryErpClient({SyncEntity.PRODUCTS: items})
    handler = RecordingHandler()
    processor = make_processor(client, handler)

    result = processor.process(SyncEntity.PRODUCTS, make_checkpoint(), {"active": True})

    assert handler.applied == ["P-0", "P-2", "P-4"]
    assert result.checkpoint.total == 3


def test_oversized_page_is_an_invariant_violation() -> None:
    processor = make_processor(OversizedClient(), RecordingHandler())
    try:
        processor.process(SyncEntity.PRODUCTS, make_checkpoint(batch_size=3), {})
    except InvariantViolationError as exc:
        assert exc.kind == "invariant_violation"
    else:
        raise AssertionError("expected InvariantViolationError")


def test_negative_offset_is_an_invariant_violation() -> None:
    client = InMemoryErpClient({SyncEntity.PRODUCTS: make_items(5)})
    processor = make_processor(client, RecordingHandler())
    try:
        processor.process(SyncEntity.PRODUCTS, make_checkpoint(offset=-1), {})
    except InvariantViolationError:
        pass
    else:
        raise AssertionError("expected InvariantViolationError")
    assert client.requests == []


def test_erp_errors_propagate() -> None:
    client = InMemoryErpClient(
        {SyncEntity.PRODUCTS: make_items(5)},
        failures={(SyncEntity.PRODUCTS, 0): TransportError("connection reset")},
    )
    processor = make_processor(client, RecordingHandler())
    try:
        processor.process(SyncEntity.PRODUCTS, make_checkpoint(), {})
    except TransportError as exc:
        assert exc.kind == "transport"
    else:
        raise AssertionError("expected TransportError")
