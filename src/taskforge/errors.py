# SPDX-License-Identifier: MIT
"""Error taxonomy for the orchestration core.

Recoverable errors (``UnitTooLarge``, ``OwnershipConflict``, ``GateFailed``)
are handled locally by re-planning or retry loops. Budget exhaustion and
structural decomposition failures surface to the caller.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskforge.conflicts import Conflict
    from taskforge.gates import BlockingIssue, Gate


class TaskforgeError(Exception):
    """Base class for all orchestration errors."""


class TaskSpecError(TaskforgeError):
    """Raised when a task document fails strict validation.

    Attributes:
        errors: Every validation error found, in document order.
    """

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            summary += f" (and {len(self.errors) - 5} more)"
        super().__init__(f"Task validation failed: {summary}")


class ConfigError(TaskforgeError, ValueError):
    """Raised when orchestrator configuration is invalid."""


class UnitTooLarge(TaskforgeError):
    """Raised when a work unit exceeds the size invariant.

    Non-fatal at task level: the decomposer feeds it back to the planner.
    """

    def __init__(
        self,
        unit_id: str,
        *,
        file_count: int,
        line_count: int,
        max_files: int,
        max_lines: int,
        split_axis: str,
    ) -> None:
        self.unit_id = unit_id
        self.file_count = file_count
        self.line_count = line_count
        self.max_files = max_files
        self.max_lines = max_lines
        self.split_axis = split_axis
        super().__init__(
            f"Unit {unit_id} is too large ({file_count} files > {max_files} or "
            f"{line_count} lines > {max_lines}); split by {split_axis}"
        )


class DependencyCycle(TaskforgeError):
    """Raised when unit prerequisites do not form a DAG."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__("Dependency cycle: " + " -> ".join(self.cycle))


class InvalidUnitGraph(TaskforgeError):
    """Raised for duplicate unit ids or prerequisites that name no unit."""


class DecompositionFailed(TaskforgeError):
    """Raised when decomposition cannot produce a valid unit graph within budget."""

    def __init__(self, message: str, causes: Sequence[Exception] = ()) -> None:
        self.causes = list(causes)
        super().__init__(message)


class ScoreUnavailable(TaskforgeError):
    """Raised when a unit lacks the attributes required for scoring.

    Fatal for that unit only; siblings continue.
    """

    def __init__(self, unit_id: str, missing: Sequence[str]) -> None:
        self.unit_id = unit_id
        self.missing = list(missing)
        super().__init__(f"Score unavailable for {unit_id}: missing {', '.join(self.missing)}")


class OwnershipConflict(TaskforgeError):
    """Raised when exclusive file claims overlap between units."""

    def __init__(self, conflicts: Sequence[Conflict]) -> None:
        self.conflicts = list(conflicts)
        parts = [f"{c.unit_a}<->{c.unit_b} on {', '.join(c.paths)}" for c in self.conflicts]
        super().__init__("Ownership conflict: " + "; ".join(parts))

    @property
    def unit_ids(self) -> set[str]:
        ids: set[str] = set()
        for conflict in self.conflicts:
            ids.update((conflict.unit_a, conflict.unit_b))
        return ids


class GateFailed(TaskforgeError):
    """A gate returned ``fail``; control goes back to the producing actor."""

    def __init__(self, unit_id: str, gate: Gate, issues: Sequence[BlockingIssue], attempt: int) -> None:
        self.unit_id = unit_id
        self.gate = gate
        self.issues = list(issues)
        self.attempt = attempt
        super().__init__(f"{unit_id} failed {gate.value} (attempt {attempt}): {len(self.issues)} blocking issue(s)")


class GateExhausted(TaskforgeError):
    """A gate's retry budget is spent; the unit is terminally rejected."""

    def __init__(self, unit_id: str, gate: Gate, attempts: int, issues: Sequence[BlockingIssue]) -> None:
        self.unit_id = unit_id
        self.gate = gate
        self.attempts = attempts
        self.issues = list(issues)
        super().__init__(f"{unit_id} rejected at {gate.value} after {attempts} attempt(s)")


class GateOrderError(TaskforgeError):
    """Raised when a verdict is recorded out of pipeline order."""


class MergeIncompatible(TaskforgeError):
    """Raised when a unit cannot be merged into the integration point."""

    def __init__(self, unit_id: str, reason: str) -> None:
        self.unit_id = unit_id
        self.reason = reason
        super().__init__(f"Merge of {unit_id} failed: {reason}")


class WorkspaceStateError(TaskforgeError):
    """Raised on an illegal workspace lifecycle transition."""


class NoCapableExecutor(TaskforgeError):
    """Raised when no registered executor advertises the required capabilities."""

    def __init__(self, required: Sequence[str]) -> None:
        self.required = sorted(required)
        super().__init__(f"No executor advertises capabilities: {', '.join(self.required) or '(none)'}")
