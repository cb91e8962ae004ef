# SPDX-License-Identifier: MIT
"""File-ownership conflict detection.

Every unit holds exclusive claims on the paths (or glob patterns) it
declares. Two claims conflict when they belong to different units and
their path sets intersect. Detection runs statically over declared claims
at planning time and dynamically when an executor reports the files it
actually touched.

A conflict is never resolved by letting the last writer win: the colliding
units are suspended and handed back for re-planning.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from taskforge.errors import OwnershipConflict
from taskforge.units import WorkUnit, normalize_path

logger = logging.getLogger(__name__)

ClaimMode = Literal["exclusive"]
DiscoveryStatus = Literal["declared", "discovered"]

_GLOB_CHARS = frozenset("*?[")


def is_pattern(path: str) -> bool:
    return any(ch in _GLOB_CHARS for ch in path)


def _literal_prefix(pattern: str) -> str:
    for idx, ch in enumerate(pattern):
        if ch in _GLOB_CHARS:
            return pattern[:idx]
    return pattern


def _literal_suffix(pattern: str) -> str:
    for idx in range(len(pattern) - 1, -1, -1):
        if pattern[idx] in _GLOB_CHARS or pattern[idx] == "]":
            return pattern[idx + 1:]
    return pattern


@dataclass(frozen=True)
class FileOwnershipClaim:
    unit_id: str
    path: str
    mode: ClaimMode = "exclusive"
    status: DiscoveryStatus = "declared"

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_path(self.path))


@dataclass(frozen=True)
class Conflict:
    """Overlap between two units' exclusive claims.

    ``unit_a`` sorts before ``unit_b`` so the same pair is reported the same
    way whichever side it was detected from.
    """

    unit_a: str
    unit_b: str
    paths: tuple[str, ...]
    discovered: bool = False

    def involves(self, unit_id: str) -> bool:
        return unit_id in (self.unit_a, self.unit_b)

    def other(self, unit_id: str) -> str:
        return self.unit_b if unit_id == self.unit_a else self.unit_a

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_a": self.unit_a,
            "unit_b": self.unit_b,
            "paths": list(self.paths),
            "discovered": self.discovered,
        }


def overlapping_path(a: str, b: str) -> str | None:
    """Return the path to report if claims ``a`` and ``b`` intersect.

    Literal paths also cover everything below them, so a claim on a
    directory collides with claims on files inside it. Two patterns are
    treated as intersecting when their literal prefixes nest and their
    literal suffixes nest, so ``src/*.js`` and ``src/*.py`` stay disjoint.
    """
    a_pat, b_pat = is_pattern(a), is_pattern(b)
    if not a_pat and not b_pat:
        if a == b or b.startswith(a + "/"):
            return b
        if a.startswith(b + "/"):
            return a
        return None
    if a_pat and not b_pat:
        return b if fnmatch.fnmatchcase(b, a) else None
    if b_pat and not a_pat:
        return a if fnmatch.fnmatchcase(a, b) else None
    if a == b or fnmatch.fnmatchcase(a, b) or fnmatch.fnmatchcase(b, a):
        return min(a, b)
    prefix_a, prefix_b = _literal_prefix(a), _literal_prefix(b)
    suffix_a, suffix_b = _literal_suffix(a), _literal_suffix(b)
    prefixes_nest = prefix_a.startswith(prefix_b) or prefix_b.startswith(prefix_a)
    suffixes_nest = suffix_a.endswith(suffix_b) or suffix_b.endswith(suffix_a)
    if prefixes_nest and suffixes_nest:
        # more specific pattern names the overlap
        return a if len(prefix_a) >= len(prefix_b) else b
    return None


def claims_for(unit: WorkUnit) -> list[FileOwnershipClaim]:
    return [FileOwnershipClaim(unit_id=unit.id, path=path, mode=unit.ownership) for path in unit.paths]


def detect(claims: Iterable[FileOwnershipClaim]) -> list[Conflict]:
    """Find every pair of units whose exclusive claims intersect.

    Returns:
        One :class:`Conflict` per colliding unit pair, sorted by unit ids,
        each listing every overlapping path.
    """
    by_unit: dict[str, list[FileOwnershipClaim]] = {}
    for claim in claims:
        if claim.mode == "exclusive":
            by_unit.setdefault(claim.unit_id, []).append(claim)

    unit_ids = sorted(by_unit)
    conflicts: list[Conflict] = []
    for i, uid_a in enumerate(unit_ids):
        for uid_b in unit_ids[i + 1:]:
            paths: set[str] = set()
            discovered = False
            for claim_a in by_unit[uid_a]:
                for claim_b in by_unit[uid_b]:
                    hit = overlapping_path(claim_a.path, claim_b.path)
                    if hit is not None:
                        paths.add(hit)
                        if "discovered" in (claim_a.status, claim_b.status):
                            discovered = True
            if paths:
                conflicts.append(Conflict(uid_a, uid_b, tuple(sorted(paths)), discovered))
    return conflicts


def detect_units(units: Sequence[WorkUnit]) -> list[Conflict]:
    """Static detection over the declared claims of ``units``."""
    claims: list[FileOwnershipClaim] = []
    for unit in units:
        claims.extend(claims_for(unit))
    return detect(claims)


class OwnershipLedger:
    """Thread-safe record of declared, discovered and active claims.

    - ``register`` records every unit's declared claims for the task
    - ``acquire`` activates a unit's claims; active claims stay pairwise disjoint
    - ``discover`` checks an executor's touched files against all other units
    - ``release`` deactivates a unit's claims

    Units caught in a conflict are suspended until ``resume`` is called.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claims: dict[str, list[FileOwnershipClaim]] = {}
        self._active: set[str] = set()
        self._suspended: set[str] = set()
        self.events: list[Conflict] = []

    def register(self, units: Iterable[WorkUnit]) -> None:
        with self._lock:
            for unit in units:
                self._claims[unit.id] = claims_for(unit)

    def claims(self, unit_id: str) -> list[FileOwnershipClaim]:
        with self._lock:
            return list(self._claims.get(unit_id, []))

    def is_available(self, unit_id: str) -> bool:
        """True if the unit's claims are disjoint from every active unit's claims."""
        with self._lock:
            return not self._conflicts_with_active(unit_id)

    def acquire(self, unit_id: str) -> None:
        """Activate ``unit_id``'s claims (all-or-nothing).

        Raises:
            OwnershipConflict: If any claim intersects an active unit's claims.
        """
        with self._lock:
            conflicts = self._conflicts_with_active(unit_id)
            if conflicts:
                raise OwnershipConflict(conflicts)
            self._active.add(unit_id)

    def release(self, unit_id: str) -> None:
        with self._lock:
            self._active.discard(unit_id)

    def active_units(self) -> set[str]:
        with self._lock:
            return set(self._active)

    def discover(self, unit_id: str, touched_paths: Iterable[str]) -> list[Conflict]:
        """Record the files a unit actually touched and detect new overlaps.

        Paths outside the unit's declaration become ``discovered`` claims.
        Conflicts involving them suspend both units and are appended to
        :attr:`events`.
        """
        with self._lock:
            own = self._claims.setdefault(unit_id, [])
            new_claims: list[FileOwnershipClaim] = []
            for raw in touched_paths:
                path = normalize_path(raw)
                if not path:
                    continue
                if any(overlapping_path(c.path, path) == path for c in own + new_claims):
                    continue
                new_claims.append(FileOwnershipClaim(unit_id=unit_id, path=path, status="discovered"))
            if not new_claims:
                return []

            own.extend(new_claims)
            others: list[FileOwnershipClaim] = []
            for uid, claims in self._claims.items():
                if uid != unit_id:
                    others.extend(claims)
            conflicts = [c for c in detect(new_claims + others) if c.involves(unit_id)]
            for conflict in conflicts:
                self._suspended.update((conflict.unit_a, conflict.unit_b))
                self.events.append(conflict)
                logger.warning(
                    "Runtime ownership conflict: %s and %s both touch %s",
                    conflict.unit_a,
                    conflict.unit_b,
                    ", ".join(conflict.paths),
                )
            return conflicts

    def is_suspended(self, unit_id: str) -> bool:
        with self._lock:
            return unit_id in self._suspended

    def resume(self, unit: WorkUnit) -> None:
        """Lift a suspension after re-planning, adopting the unit's new declaration."""
        with self._lock:
            self._suspended.discard(unit.id)
            self._claims[unit.id] = claims_for(unit)

    def _conflicts_with_active(self, unit_id: str) -> list[Conflict]:
        claims = list(self._claims.get(unit_id, []))
        for uid in self._active:
            if uid != unit_id:
                claims.extend(self._claims.get(uid, []))
        return [c for c in detect(claims) if c.involves(unit_id)]
