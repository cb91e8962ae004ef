# SPDX-License-Identifier: MIT
"""Capability-tagged executor registry.

Executors advertise a capability set through an :class:`AgentProfile`.
Work units name the capabilities they need, and :meth:`ExecutorRegistry.match`
resolves them by explicit set lookup. Variants of one role are versions of
the same profile, not separate entries with separate logic.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from taskforge.errors import NoCapableExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentProfile:
    name: str
    variant: str = "default"
    version: int = 1
    capabilities: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "capabilities", frozenset(self.capabilities))

    def supports(self, required: Iterable[str]) -> bool:
        return set(required) <= self.capabilities

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AgentProfile:
        return cls(
            name=str(data["name"]),
            variant=str(data.get("variant", "default")),
            version=int(data.get("version", 1)),
            capabilities=frozenset(data.get("capabilities", [])),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "variant": self.variant,
            "version": self.version,
            "capabilities": sorted(self.capabilities),
        }


class ExecutorRegistry:
    """Maps capability requirements to registered executors."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], tuple[AgentProfile, Any]] = {}

    def register(self, profile: AgentProfile, executor: Any) -> None:
        """Register ``executor`` under ``profile``.

        Re-registering the same name and variant replaces the entry only
        with an equal or newer version.
        """
        key = (profile.name, profile.variant)
        with self._lock:
            current = self._entries.get(key)
            if current is not None and current[0].version > profile.version:
                logger.debug(
                    "Ignoring %s/%s v%d; v%d already registered",
                    profile.name,
                    profile.variant,
                    profile.version,
                    current[0].version,
                )
                return
            self._entries[key] = (profile, executor)

    def profiles(self) -> list[AgentProfile]:
        with self._lock:
            return sorted((p for p, _ in self._entries.values()), key=lambda p: (p.name, p.variant))

    def match(self, required: Iterable[str]) -> tuple[AgentProfile, Any]:
        """Find the executor for a capability requirement.

        Candidates must advertise a superset of ``required``. Preference:
        highest version, then the smallest capability set, then name.

        Raises:
            NoCapableExecutor: If nothing advertises the required capabilities.
        """
        required = set(required)
        with self._lock:
            candidates = [entry for entry in self._entries.values() if entry[0].supports(required)]
        if not candidates:
            raise NoCapableExecutor(required)
        candidates.sort(key=lambda e: (-e[0].version, len(e[0].capabilities), e[0].name, e[0].variant))
        return candidates[0]
