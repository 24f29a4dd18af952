from __future__ import annotations


class InvariantViolationError(RuntimeError):
    """Engine state that can only come from a programming error or a corrupted store."""

    kind = "invariant_violation"
