# SPDX-License-Identifier: MIT
"""Task decomposition into a DAG of bounded work units.

The decomposer does not invent units from free text. A planner collaborator
proposes unit drafts; this module validates them (unique ids, known
prerequisites, acyclic edges, size invariant), feeds structural problems
back to the planner within a bounded budget, and returns the units in a
stable topological order.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, Literal

from taskforge.config import SizeLimits
from taskforge.errors import (
    DecompositionFailed,
    DependencyCycle,
    InvalidUnitGraph,
    TaskforgeError,
    UnitTooLarge,
)
from taskforge.units import TaskSpec, WorkUnit, normalize_path

logger = logging.getLogger(__name__)

SplitAxis = Literal["layer", "responsibility", "file"]

# Planner: (task, feedback messages) -> unit drafts
Planner = Callable[[TaskSpec, list[str]], Sequence[WorkUnit | Mapping[str, Any]]]


def suggest_split_axis(unit: WorkUnit) -> SplitAxis:
    """Pick the axis along which an oversized unit should be split.

    - ``layer``: paths span more than one top-level directory
    - ``file``: several files inside a single layer
    - ``responsibility``: one file (or no known paths) carrying too much logic
    """
    layers = {path.split("/", 1)[0] if "/" in path else "." for path in unit.paths}
    if len(layers) > 1:
        return "layer"
    if len(unit.files) > 1 or (unit.size.estimated_files or 0) > 1:
        return "file"
    return "responsibility"


def check_size(unit: WorkUnit, limits: SizeLimits) -> None:
    """Raise :class:`UnitTooLarge` if ``unit`` exceeds the size invariant."""
    if unit.file_count > limits.max_files or unit.line_count > limits.max_lines:
        raise UnitTooLarge(
            unit.id,
            file_count=unit.file_count,
            line_count=unit.line_count,
            max_files=limits.max_files,
            max_lines=limits.max_lines,
            split_axis=suggest_split_axis(unit),
        )


def find_cycle(units: Sequence[WorkUnit]) -> list[str] | None:
    """Return one dependency cycle as ``[a, b, ..., a]``, or None if acyclic.

    Edges to unknown ids are ignored here; :func:`validate_graph` reports them.
    """
    by_id = {u.id: u for u in units}
    # 0 = unvisited, 1 = on stack, 2 = done
    color: dict[str, int] = {u.id: 0 for u in units}
    stack: list[str] = []

    def visit(uid: str) -> list[str] | None:
        color[uid] = 1
        stack.append(uid)
        for dep in by_id[uid].depends_on:
            if dep not in by_id:
                continue
            if color[dep] == 1:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == 0:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[uid] = 2
        return None

    for unit in units:
        if color[unit.id] == 0:
            found = visit(unit.id)
            if found:
                # reported in prerequisite -> dependent direction
                return list(reversed(found))
    return None


def topological_order(units: Sequence[WorkUnit]) -> list[WorkUnit]:
    """Order units so every unit follows its prerequisites.

    Independent units keep their declaration order.

    Raises:
        DependencyCycle: If prerequisites do not form a DAG.
    """
    cycle = find_cycle(units)
    if cycle:
        raise DependencyCycle(cycle)

    known = {u.id for u in units}
    placed: set[str] = set()
    ordered: list[WorkUnit] = []
    remaining = list(units)
    while remaining:
        for idx, unit in enumerate(remaining):
            if all(dep in placed or dep not in known for dep in unit.depends_on):
                ordered.append(unit)
                placed.add(unit.id)
                del remaining[idx]
                break
    return ordered


def validate_graph(units: Sequence[WorkUnit]) -> list[TaskforgeError]:
    """Collect duplicate-id, unknown-prerequisite and cycle problems."""
    problems: list[TaskforgeError] = []
    seen: set[str] = set()
    for unit in units:
        if unit.id in seen:
            problems.append(InvalidUnitGraph(f"Duplicate unit id: {unit.id}"))
        seen.add(unit.id)
    for unit in units:
        for dep in unit.depends_on:
            if dep not in seen:
                problems.append(InvalidUnitGraph(f"Unit {unit.id} depends on unknown unit {dep}"))
    if not problems:
        cycle = find_cycle(units)
        if cycle:
            problems.append(DependencyCycle(cycle))
    return problems


def apply_layout_hints(unit: WorkUnit, existing_files: Iterable[str]) -> WorkUnit:
    """Re-classify declared ``new`` files that already exist as small edits."""
    existing = {normalize_path(p) for p in existing_files}
    if not existing or not any(f.change == "new" and f.path in existing for f in unit.files):
        return unit
    files = tuple(
        f.model_copy(update={"change": "small"}) if f.change == "new" and f.path in existing else f
        for f in unit.files
    )
    return unit.model_copy(update={"files": files})


class Decomposer:
    """Validates unit drafts into a schedulable unit graph."""

    def __init__(self, limits: SizeLimits | None = None) -> None:
        self.limits = limits or SizeLimits()

    def validate(self, units: Sequence[WorkUnit]) -> list[TaskforgeError]:
        """Return every structural problem with ``units`` (empty if valid)."""
        problems = validate_graph(units)
        for unit in units:
            try:
                check_size(unit, self.limits)
            except UnitTooLarge as exc:
                problems.append(exc)
        return problems

    def decompose(self, task: TaskSpec) -> list[WorkUnit]:
        """Turn the task's unit drafts into an ordered unit graph.

        Raises:
            InvalidUnitGraph, DependencyCycle, UnitTooLarge: The first problem found.
        """
        units = [apply_layout_hints(u, task.existing_files) for u in task.units]
        problems = self.validate(units)
        if problems:
            raise problems[0]
        ordered = topological_order(units)
        logger.info("Decomposed task %s into %d unit(s)", task.id, len(ordered))
        return ordered

    def plan_units(
        self,
        task: TaskSpec,
        planner: Planner | None = None,
        *,
        max_attempts: int = 3,
    ) -> list[WorkUnit]:
        """Decompose with bounded re-decomposition.

        Structural problems are handed back to ``planner`` as feedback and a
        fresh set of drafts is requested, up to ``max_attempts`` rounds. The
        task's own unit drafts are used for the first round when present.

        Raises:
            DecompositionFailed: If no valid graph was produced within budget.
        """
        attempts = max_attempts if planner is not None else 1
        current = task
        if not current.units and planner is not None:
            current = _with_drafts(task, planner(task, []))

        causes: list[Exception] = []
        for attempt in range(1, attempts + 1):
            units = [apply_layout_hints(u, task.existing_files) for u in current.units]
            problems = self.validate(units)
            if not units:
                problems.append(InvalidUnitGraph(f"Task {task.id} produced no work units"))
            if not problems:
                ordered = topological_order(units)
                logger.info(
                    "Decomposed task %s into %d unit(s) on attempt %d", task.id, len(ordered), attempt
                )
                return ordered

            causes.extend(problems)
            feedback = [str(p) for p in problems]
            logger.warning(
                "Decomposition attempt %d/%d for %s rejected: %s", attempt, attempts, task.id, "; ".join(feedback)
            )
            if planner is None or attempt == attempts:
                break
            current = _with_drafts(task, planner(task, feedback))

        raise DecompositionFailed(
            f"Task {task.id} could not be decomposed within {attempts} attempt(s)",
            causes=causes,
        )

    def resequence(self, units: Sequence[WorkUnit], *, offender: str, owner: str, paths: Iterable[str]) -> list[WorkUnit]:
        """Resolve a runtime conflict by re-scoping and re-sequencing.

        ``offender`` gains the contested ``paths`` in its declaration and a
        prerequisite edge on ``owner`` so the two never run concurrently.
        The re-scoped unit must still fit the size limits.

        Raises:
            DependencyCycle: If ``owner`` already depends on ``offender``.
            UnitTooLarge: If the re-scoped ``offender`` exceeds the size limits.
        """
        paths = list(paths)
        updated = []
        for unit in units:
            if unit.id == offender:
                unit = unit.with_files(paths).with_prerequisites([owner])
                check_size(unit, self.limits)
            updated.append(unit)
        ordered = topological_order(updated)
        logger.info("Re-sequenced %s behind %s (re-scoped to include %s)", offender, owner, ", ".join(paths))
        return ordered


def _with_drafts(task: TaskSpec, drafts: Sequence[WorkUnit | Mapping[str, Any]]) -> TaskSpec:
    units = tuple(d if isinstance(d, WorkUnit) else WorkUnit.model_validate(d) for d in drafts)
    return task.model_copy(update={"units": units})
