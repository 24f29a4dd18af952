from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from erpsync.db.models import SyncEntity
from erpsync.erp.protocols import EntityHandler, ErpClient, ErpItem, HandlerRegistry, ItemOutcome
from erpsync.sync.errors import InvariantViolationError
from erpsync.sync.types import BatchResult, Checkpoint, ItemResult

logger = logging.getLogger(__name__)


class BatchProcessor:
    def __init__(self, client: ErpClient, handlers: HandlerRegistry):
        self._client = client
        self._handlers = handlers

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def process(
        self,
        entity: SyncEntity,
        checkpoint: Checkpoint,
        filters: Mapping[str, Any],
        *,
        session: str | None = None,
    ) -> BatchResult:
        if checkpoint.offset < 0:
            raise InvariantViolationError(f"Negative offset {checkpoint.offset} for {entity.value}")
        if checkpoint.batch_size <= 0:
            raise InvariantViolationError(f"Non-positive batch size {checkpoint.batch_size} for {entity.value}")

        handler = self._handlers.get(entity, checkpoint.direction)
        page = self._client.fetch_page(entity, checkpoint.offset, checkpoint.batch_size, filters, session)
        items = list(page.items)
        if len(items) > checkpoint.batch_size:
            raise InvariantViolationError(
                f"ERP returned {len(items)} {entity.value} for a page of {checkpoint.batch_size}"
            )

        results: list[ItemResult] = []
        for index, item in enumerate(items):
            results.append(
                ItemResult(
                    position=checkpoint.offset + index,
                    reference=item.reference,
                    outcome=self._apply(handler, item),
                )
            )

        failed = sum(1 for result in results if not result.outcome.success)
        processed = checkpoint.processed + len(results)
        total = page.total if page.total is not None else checkpoint.total
        if total is not None:
            total = max(total, processed)

        next_checkpoint = dataclasses.replace(
            checkpoint,
            offset=checkpoint.offset + len(items),
            batch_index=checkpoint.batch_index + 1,
            processed=processed,
            errors=checkpoint.errors + failed,
            total=total,
            updated_at=self._now(),
        )
        has_more = len(items) == checkpoint.batch_size
        logger.debug(
            "Batch processed entity=%s batch=%s fetched=%s failed=%s has_more=%s",
            entity.value,
            next_checkpoint.batch_index,
            len(items),
            failed,
            has_more,
        )
        return BatchResult(checkpoint=next_checkpoint, items=results, has_more=has_more)

    def _apply(self, handler: EntityHandler, item: ErpItem) -> ItemOutcome:
        label = item.label or item.reference
        try:
            outcome = handler.apply(item)
        except Exception as exc:
            logger.warning("Sync of %s failed: %s", item.reference, exc, exc_info=True)
            return ItemOutcome.failed(reason=str(exc) or exc.__class__.__name__, label=label)
        if outcome.label is None:
            outcome = dataclasses.replace(outcome, label=label)
        if not outcome.success and not outcome.reason:
            outcome = dataclasses.replace(outcome, reason="handler reported failure without a reason")
        return outcome


def current_label(result: BatchResult) -> str | None:
    if not result.items:
        return None
    return result.items[-1].outcome.label
