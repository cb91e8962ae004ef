# SPDX-License-Identifier: MIT
"""Execution strategy selection.

Rules, evaluated in order:

1. Any file-ownership conflict (reported or declared overlap) -> isolated-workspace
2. Peak unit score <= direct threshold (10) -> direct
3. Peak unit score <= shared threshold (30) and unit count <= 5 -> shared-branch
4. Otherwise -> isolated-workspace

The score compared against the thresholds is the highest per-unit total.
Every decision carries a rationale naming the thresholds that fired, since
consolidation planning reads it. Re-evaluation during execution can only
escalate.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from taskforge.config import StrategyThresholds
from taskforge.conflicts import Conflict, detect_units
from taskforge.scoring import ComplexityScore
from taskforge.units import WorkUnit

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    DIRECT = "direct"
    SHARED_BRANCH = "shared-branch"
    ISOLATED_WORKSPACE = "isolated-workspace"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {
    Strategy.DIRECT: 0,
    Strategy.SHARED_BRANCH: 1,
    Strategy.ISOLATED_WORKSPACE: 2,
}


@dataclass(frozen=True)
class StrategyDecision:
    strategy: Strategy
    rationale: str
    peak_score: int
    unit_count: int
    conflicts: tuple[Conflict, ...] = ()
    escalated_from: Strategy | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "rationale": self.rationale,
            "peak_score": self.peak_score,
            "unit_count": self.unit_count,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "escalated_from": self.escalated_from.value if self.escalated_from else None,
        }


def conflict_groups(conflicts: Sequence[Conflict]) -> list[set[str]]:
    """Group units transitively linked by conflicts.

    A-B and B-C put A, B and C in one group even though A and C do not
    overlap; the whole group is escalated together.
    """
    parent: dict[str, str] = {}

    def find(x: str) -> str:
        parent.setdefault(x, x)
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for conflict in conflicts:
        root_a, root_b = find(conflict.unit_a), find(conflict.unit_b)
        if root_a != root_b:
            parent[max(root_a, root_b)] = min(root_a, root_b)

    groups: dict[str, set[str]] = {}
    for uid in parent:
        groups.setdefault(find(uid), set()).add(uid)
    return sorted(groups.values(), key=lambda g: sorted(g))


def _merge_conflicts(reported: Sequence[Conflict], declared: Sequence[Conflict]) -> tuple[Conflict, ...]:
    merged: dict[tuple[str, str], Conflict] = {}
    for conflict in [*reported, *declared]:
        key = (conflict.unit_a, conflict.unit_b)
        if key in merged:
            prev = merged[key]
            paths = tuple(sorted(set(prev.paths) | set(conflict.paths)))
            merged[key] = Conflict(key[0], key[1], paths, prev.discovered or conflict.discovered)
        else:
            merged[key] = conflict
    return tuple(merged[k] for k in sorted(merged))


class StrategySelector:
    """Maps scores and structural signals to an execution strategy."""

    def __init__(self, thresholds: StrategyThresholds | None = None) -> None:
        self.thresholds = thresholds or StrategyThresholds()

    def select(
        self,
        units: Sequence[WorkUnit],
        scores: Mapping[str, ComplexityScore],
        conflicts: Sequence[Conflict] = (),
    ) -> StrategyDecision:
        t = self.thresholds
        unit_count = len(units)
        peak = max((scores[u.id].total for u in units if u.id in scores), default=0)
        all_conflicts = _merge_conflicts(conflicts, detect_units(units))

        if all_conflicts:
            pairs = "; ".join(f"{c.unit_a}<->{c.unit_b} on {', '.join(c.paths)}" for c in all_conflicts)
            groups = ", ".join("{" + ", ".join(sorted(g)) + "}" for g in conflict_groups(all_conflicts))
            rationale = (
                f"isolated-workspace: file ownership conflict ({pairs}) overrides score "
                f"(peak unit score {peak}, {unit_count} unit(s)); escalated conflict group(s): {groups}"
            )
            return StrategyDecision(Strategy.ISOLATED_WORKSPACE, rationale, peak, unit_count, all_conflicts)

        if unit_count == 0:
            return StrategyDecision(Strategy.DIRECT, "direct: no work units to schedule", 0, 0)

        if peak <= t.direct_max_score:
            rationale = (
                f"direct: peak unit score {peak} <= {t.direct_max_score} (direct threshold); "
                f"{unit_count} unit(s), no file overlap"
            )
            return StrategyDecision(Strategy.DIRECT, rationale, peak, unit_count)

        if peak <= t.shared_branch_max_score and unit_count <= t.shared_branch_max_units:
            rationale = (
                f"shared-branch: peak unit score {peak} in ({t.direct_max_score}, {t.shared_branch_max_score}], "
                f"{unit_count} unit(s) <= {t.shared_branch_max_units}, no file overlap"
            )
            return StrategyDecision(Strategy.SHARED_BRANCH, rationale, peak, unit_count)

        reasons = []
        if peak > t.shared_branch_max_score:
            reasons.append(f"peak unit score {peak} > {t.shared_branch_max_score}")
        if unit_count > t.shared_branch_max_units:
            reasons.append(f"{unit_count} units > {t.shared_branch_max_units}")
        rationale = "isolated-workspace: " + " and ".join(reasons)
        return StrategyDecision(Strategy.ISOLATED_WORKSPACE, rationale, peak, unit_count)

    def reevaluate(
        self,
        previous: StrategyDecision,
        units: Sequence[WorkUnit],
        scores: Mapping[str, ComplexityScore],
        conflicts: Sequence[Conflict] = (),
    ) -> StrategyDecision:
        """Re-run selection mid-flight; the strategy may escalate but never relax."""
        fresh = self.select(units, scores, [*previous.conflicts, *conflicts])
        if fresh.strategy.rank < previous.strategy.rank:
            return StrategyDecision(
                previous.strategy,
                f"{previous.strategy.value}: kept mid-flight, strategies never de-escalate ({fresh.rationale})",
                fresh.peak_score,
                fresh.unit_count,
                fresh.conflicts,
                previous.escalated_from,
            )
        if fresh.strategy.rank > previous.strategy.rank:
            logger.warning(
                "Escalating strategy %s -> %s: %s",
                previous.strategy.value,
                fresh.strategy.value,
                fresh.rationale,
            )
            return StrategyDecision(
                fresh.strategy,
                f"{fresh.rationale} (escalated from {previous.strategy.value})",
                fresh.peak_score,
                fresh.unit_count,
                fresh.conflicts,
                previous.strategy,
            )
        return StrategyDecision(
            fresh.strategy,
            fresh.rationale,
            fresh.peak_score,
            fresh.unit_count,
            fresh.conflicts,
            previous.escalated_from,
        )


def select(
    units: Sequence[WorkUnit],
    scores: Mapping[str, ComplexityScore],
    conflicts: Sequence[Conflict] = (),
    thresholds: StrategyThresholds | None = None,
) -> StrategyDecision:
    return StrategySelector(thresholds).select(units, scores, conflicts)
