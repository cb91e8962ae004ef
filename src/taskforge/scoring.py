# SPDX-License-Identifier: MIT
"""Complexity scoring for work units.

Five integer sub-scores are computed from simple counting rules over a
unit's declared attributes:

- file impact: new/small edit 1, medium 2, large 3, plus 2 per core file
- dependency: 3 x external integrations + 2 x schema changes
  + 2 x third-party upgrades + 1 x cross-module deps
- testing: 1 x unit-test files + 2 x integration scenarios
  + 2 if mocking is required + 3 x end-to-end scenarios
- integration risk: 3 x file overlaps + 2 x shared-interface changes
  + 2 x cross-cutting concerns
- uncertainty: 3 unfamiliar tech + 2 unclear requirements
  + 1 missing docs + 2 requires research

Scores depend only on the unit (and its peers, for overlaps): no clock,
no randomness.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from taskforge.conflicts import overlapping_path
from taskforge.errors import ScoreUnavailable
from taskforge.units import FileChange, WorkUnit

CHANGE_POINTS: dict[str, int] = {"new": 1, "small": 1, "medium": 2, "large": 3}
CORE_FILE_BONUS = 2
# Files known only by estimate are scored as medium edits
ESTIMATED_FILE_POINTS = CHANGE_POINTS["medium"]


@dataclass(frozen=True)
class ComplexityScore:
    unit_id: str
    file_impact: int
    dependency: int
    testing: int
    integration: int
    uncertainty: int

    @property
    def total(self) -> int:
        return self.file_impact + self.dependency + self.testing + self.integration + self.uncertainty

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "file_impact": self.file_impact,
            "dependency": self.dependency,
            "testing": self.testing,
            "integration": self.integration,
            "uncertainty": self.uncertainty,
            "total": self.total,
        }


def _file_points(change: FileChange) -> int:
    return CHANGE_POINTS[change.change] + (CORE_FILE_BONUS if change.core else 0)


def count_overlaps(unit: WorkUnit, peers: Sequence[WorkUnit]) -> int:
    """Number of the unit's declared paths that intersect another unit's claims.

    Uses the conflict detector's overlap rule, so a directory or glob claim
    overlaps the files under it.
    """
    others = [path for peer in peers if peer.id != unit.id for path in peer.paths]
    return sum(1 for path in unit.paths if any(overlapping_path(path, other) is not None for other in others))


def score(unit: WorkUnit, peers: Sequence[WorkUnit] | None = None) -> ComplexityScore:
    """Compute the complexity score of ``unit``.

    Args:
        unit: The unit to score.
        peers: Other units of the same task. When given, file overlaps are
            counted against their declared paths; otherwise the unit's
            declared ``flags.file_overlaps`` is used.

    Raises:
        ScoreUnavailable: If the unit has neither concrete paths nor a file
            estimate. A malformed unit never scores as zero.
    """
    if not unit.files and unit.size.estimated_files is None:
        raise ScoreUnavailable(unit.id, ["files or size.estimated_files"])

    flags = unit.flags

    if unit.files:
        file_impact = sum(_file_points(change) for change in unit.files)
    else:
        file_impact = ESTIMATED_FILE_POINTS * (unit.size.estimated_files or 0)

    dependency = (
        3 * flags.external_integrations
        + 2 * flags.schema_changes
        + 2 * flags.third_party_upgrades
        + 1 * flags.cross_module_deps
    )

    testing = (
        1 * flags.unit_test_files
        + 2 * flags.integration_scenarios
        + (2 if flags.requires_mocking else 0)
        + 3 * flags.e2e_scenarios
    )

    overlaps = count_overlaps(unit, peers) if peers is not None else flags.file_overlaps
    integration = 3 * overlaps + 2 * flags.shared_interface_changes + 2 * flags.cross_cutting_concerns

    uncertainty = (
        (3 if flags.unfamiliar_tech else 0)
        + (2 if flags.unclear_requirements else 0)
        + (1 if flags.missing_docs else 0)
        + (2 if flags.requires_research else 0)
    )

    return ComplexityScore(
        unit_id=unit.id,
        file_impact=file_impact,
        dependency=dependency,
        testing=testing,
        integration=integration,
        uncertainty=uncertainty,
    )


def score_units(
    units: Sequence[WorkUnit],
) -> tuple[dict[str, ComplexityScore], dict[str, ScoreUnavailable]]:
    """Score every unit against its peers.

    Returns:
        Tuple of (scores by unit id, ScoreUnavailable errors by unit id).
        A malformed unit is reported without blocking its siblings.
    """
    scores: dict[str, ComplexityScore] = {}
    unavailable: dict[str, ScoreUnavailable] = {}
    for unit in units:
        try:
            scores[unit.id] = score(unit, peers=units)
        except ScoreUnavailable as exc:
            unavailable[unit.id] = exc
    return scores, unavailable
