from __future__ import annotations

import argparse
import collections
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from erpsync.core.config import get_settings
from erpsync.core.logging import configure_logging
from erpsync.db.init_db import initialize_database
from erpsync.db.models import SyncDirection, SyncEntity
from erpsync.db.session import get_session_factory, reset_engine
from erpsync.erp.memory import InMemoryErpClient, RecordingHandler, make_items
from erpsync.erp.protocols import HandlerRegistry
from erpsync.sync.orchestrator import SyncOrchestrator
from erpsync.sync.types import TickOptions, TickOutcome, TickResult


@dataclass(slots=True)
class RunStats:
    elapsed_seconds: float
    ticks: int
    outcomes: collections.Counter[str]
    processed: int
    errors: int
    applied: int
    latency_p50_ms: float
    latency_p95_ms: float

    @property
    def items_per_second(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.processed / self.elapsed_seconds

    @property
    def busy_ratio(self) -> float:
        if self.ticks <= 0:
            return 0.0
        return self.outcomes[TickOutcome.BUSY.value] / self.ticks


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a synthetic sync run tick by tick and report latency")
    parser.add_argument("--state-root", required=True, help="State root directory")
    parser.add_argument("--entity", default="products", choices=[entity.value for entity in SyncEntity])
    parser.add_argument("--items", type=int, default=5000, help="Number of seeded ERP items")
    parser.add_argument("--batch-size", type=int, default=None, help="Requested batch size (clamped per entity)")
    parser.add_argument("--drivers", type=int, default=1, help="Concurrent drivers polling the same entity")
    parser.add_argument("--failure-every", type=int, default=0, help="Fail every Nth item in the handler")
    parser.add_argument("--max-ticks", type=int, default=10000, help="Safety bound on total tick calls")
    parser.add_argument("--log-level", default="WARNING", help="Log level while benchmarking")
    parser.add_argument("--min-items-per-second", type=float, default=None, help="Fail if throughput is below threshold")
    parser.add_argument("--max-p95-ms", type=float, default=None, help="Fail if p95 tick latency is above threshold")
    return parser.parse_args()


def configure_env(state_root: Path) -> None:
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["ERPSYNC_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    reset_engine()


def percentile(values: list[float], ratio: float) -> float:
    if not values:
        return 0.0
    if len(values) == 1:
        return values[0]
    sorted_values = sorted(values)
    index = int(round((len(sorted_values) - 1) * ratio))
    index = max(0, min(index, len(sorted_values) - 1))
    return sorted_values[index]


def run_benchmark(
    *,
    orchestrator: SyncOrchestrator,
    handler: RecordingHandler,
    entity: SyncEntity,
    options: TickOptions,
    drivers: int,
    max_ticks: int,
) -> RunStats:
    outcomes: collections.Counter[str] = collections.Counter()
    latencies_ms: list[float] = []
    terminal = {TickOutcome.COMPLETED, TickOutcome.CANCELLED, TickOutcome.FAILED}
    done = threading.Event()
    final: list[TickResult] = []

    def tick_once() -> tuple[TickResult, float] | None:
        # drivers that wake up after the run finished must not start a new one
        if done.is_set():
            return None
        started = time.perf_counter()
        result = orchestrator.tick(entity, options)
        if result.outcome in terminal:
            done.set()
        return result, (time.perf_counter() - started) * 1000.0

    start = time.perf_counter()
    with ThreadPoolExecutor(max_workers=max(1, drivers)) as executor:
        while not done.is_set() and sum(outcomes.values()) < max_ticks:
            futures = [executor.submit(tick_once) for _ in range(max(1, drivers))]
            for future in futures:
                measured = future.result()
                if measured is None:
                    continue
                result, latency_ms = measured
                outcomes[result.outcome.value] += 1
                latencies_ms.append(latency_ms)
                if result.outcome in terminal:
                    final.append(result)
    elapsed = time.perf_counter() - start

    if not final:
        raise RuntimeError(f"run did not finish within {max_ticks} ticks")
    final_snapshot = final[0].snapshot

    return RunStats(
        elapsed_seconds=elapsed,
        ticks=sum(outcomes.values()),
        outcomes=outcomes,
        processed=0 if final_snapshot is None else final_snapshot.processed,
        errors=0 if final_snapshot is None else final_snapshot.errors,
        applied=len(handler.applied),
        latency_p50_ms=percentile(latencies_ms, 0.50),
        latency_p95_ms=percentile(latencies_ms, 0.95),
    )


def assert_thresholds(args: argparse.Namespace, stats: RunStats) -> None:
    failures: list[str] = []
    if args.min_items_per_second is not None and stats.items_per_second < args.min_items_per_second:
        failures.append(
            f"items_per_second={stats.items_per_second:.2f} < min_items_per_second={args.min_items_per_second:.2f}"
        )
    if args.max_p95_ms is not None and stats.latency_p95_ms > args.max_p95_ms:
        failures.append(f"latency_p95_ms={stats.latency_p95_ms:.2f} > max_p95_ms={args.max_p95_ms:.2f}")
    if stats.outcomes[TickOutcome.FAILED.value]:
        failures.append(f"run failed: {dict(stats.outcomes)}")
    if failures:
        raise RuntimeError("; ".join(failures))


def main() -> None:
    args = parse_args()
    configure_env(Path(args.state_root))
    configure_logging(args.log_level)
    initialize_database()

    entity = SyncEntity(args.entity)
    items = make_items(max(1, args.items), prefix=entity.value.upper())
    failing: set[str] = set()
    if args.failure_every > 0:
        failing = {item.reference for index, item in enumerate(items) if (index + 1) % args.failure_every == 0}

    handler = RecordingHandler(fail_references=failing)
    registry = HandlerRegistry()
    registry.register(entity, SyncDirection.ERP_TO_STORE, handler)
    orchestrator = SyncOrchestrator(
        get_settings(),
        get_session_factory(),
        InMemoryErpClient({entity: items}),
        registry,
    )

    stats = run_benchmark(
        orchestrator=orchestrator,
        handler=handler,
        entity=entity,
        options=TickOptions(batch_size=args.batch_size),
        drivers=max(1, args.drivers),
        max_ticks=max(1, args.max_ticks),
    )

    print("== Sync Tick Benchmark ==")
    print(f"entity={entity.value}")
    print(f"ticks={stats.ticks}")
    for outcome, count in sorted(stats.outcomes.items()):
        print(f"outcome_{outcome}={count}")
    print(f"processed={stats.processed}")
    print(f"errors={stats.errors}")
    print(f"applied={stats.applied}")
    print(f"elapsed_seconds={stats.elapsed_seconds:.3f}")
    print(f"items_per_second={stats.items_per_second:.2f}")
    print(f"busy_ratio={stats.busy_ratio:.4f}")
    print(f"latency_p50_ms={stats.latency_p50_ms:.2f}")
    print(f"latency_p95_ms={stats.latency_p95_ms:.2f}")

    assert_thresholds(args, stats)


if __name__ == "__main__":
    main()
