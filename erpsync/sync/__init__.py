from erpsync.sync.errors import InvariantViolationError
from erpsync.sync.orchestrator import SyncOrchestrator, checkpoint_to_dict, snapshot_to_dict
from erpsync.sync.types import (
    Checkpoint,
    ProgressSnapshot,
    TickOptions,
    TickOutcome,
    TickResult,
)

__all__ = [
    "Checkpoint",
    "InvariantViolationError",
    "ProgressSnapshot",
    "SyncOrchestrator",
    "TickOptions",
    "TickOutcome",
    "TickResult",
    "checkpoint_to_dict",
    "snapshot_to_dict",
]
