# SPDX-License-Identifier: MIT
"""Integration reports for orchestrated task runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskforge.atomic_io import atomic_write_json, atomic_write_text
from taskforge.conflicts import Conflict
from taskforge.gates import GateResult
from taskforge.scoring import ComplexityScore
from taskforge.strategy import StrategyDecision

UnitStatus = Literal["integrated", "rejected", "awaiting-authorization", "blocked"]
TaskStatus = Literal["complete", "incomplete", "failed"]


@dataclass
class OutcomeClassification:
    category: str
    next_action: str


def classify_outcome(status: str, reason: str | None) -> OutcomeClassification:
    if status == "integrated":
        return OutcomeClassification(category="success", next_action="")
    if status == "awaiting-authorization":
        return OutcomeClassification(
            category="awaiting_authorization",
            next_action="Pass a go/no-go signal for the unit to Orchestrator.resume() to continue the run.",
        )
    if status == "blocked":
        return OutcomeClassification(
            category="blocked",
            next_action="Resolve the prerequisite's outcome; the unit becomes eligible once it integrates.",
        )

    reason_text = (reason or "").lower()

    if "score unavailable" in reason_text:
        return OutcomeClassification(
            category="malformed_unit",
            next_action="Declare the unit's files or a file estimate and re-plan.",
        )
    if "rejected at" in reason_text:
        return OutcomeClassification(
            category="gate_exhausted",
            next_action="Address the blocking issues listed in the gate history, then re-run the unit.",
        )
    if "merge" in reason_text:
        return OutcomeClassification(
            category="merge_incompatible",
            next_action="Resolve the incompatibility against the integration point, then re-run consolidation.",
        )
    if "ownership conflict" in reason_text:
        return OutcomeClassification(
            category="ownership_conflict",
            next_action="Re-scope the colliding units so their file claims are disjoint, then re-plan.",
        )
    if "no executor" in reason_text:
        return OutcomeClassification(
            category="no_executor",
            next_action="Register an executor advertising the unit's required capabilities.",
        )

    return OutcomeClassification(
        category="unknown_failure",
        next_action="Inspect the logs, determine the root cause, and re-run with a targeted fix.",
    )


@dataclass
class UnitOutcome:
    unit_id: str
    title: str
    status: UnitStatus
    reason: str | None = None
    depends_on: tuple[str, ...] = ()
    score: ComplexityScore | None = None
    workspace: str | None = None
    gate_history: list[GateResult] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        classification = classify_outcome(self.status, self.reason)
        return {
            "unit_id": self.unit_id,
            "title": self.title,
            "status": self.status,
            "reason": self.reason,
            "category": classification.category,
            "next_action": classification.next_action,
            "depends_on": list(self.depends_on),
            "score": self.score.to_dict() if self.score else None,
            "workspace": self.workspace,
            "summary": self.summary,
            "gate_history": [r.to_dict() for r in self.gate_history],
        }


@dataclass
class IntegrationReport:
    task_id: str
    title: str
    status: TaskStatus
    decision: StrategyDecision | None = None
    escalations: list[StrategyDecision] = field(default_factory=list)
    units: list[UnitOutcome] = field(default_factory=list)
    merge_order: list[str] = field(default_factory=list)
    runtime_conflicts: list[Conflict] = field(default_factory=list)
    workspaces: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    def outcome(self, unit_id: str) -> UnitOutcome:
        for unit in self.units:
            if unit.unit_id == unit_id:
                return unit
        raise KeyError(unit_id)

    def with_status(self, status: UnitStatus) -> list[str]:
        return [u.unit_id for u in self.units if u.status == status]

    @property
    def integrated(self) -> list[str]:
        return self.with_status("integrated")

    @property
    def rejected(self) -> dict[str, str]:
        return {u.unit_id: u.reason or "" for u in self.units if u.status == "rejected"}

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "status": self.status,
            "error": self.error,
            "strategy": self.decision.to_dict() if self.decision else None,
            "escalations": [d.to_dict() for d in self.escalations],
            "merge_order": list(self.merge_order),
            "runtime_conflicts": [c.to_dict() for c in self.runtime_conflicts],
            "units": [u.to_dict() for u in self.units],
            "workspaces": list(self.workspaces),
        }

    def write_json(self, path: Path | str) -> Path:
        path = Path(path)
        atomic_write_json(path, self.to_dict())
        return path

    def to_markdown(self) -> str:
        lines = [
            f"# Integration Report: {self.task_id} - {self.title}",
            "",
            "## Summary",
            f"- Status: {self.status}",
        ]
        if self.error:
            lines.append(f"- Error: {self.error}")
        if self.decision:
            lines.extend(
                [
                    f"- Strategy: {self.decision.strategy.value}",
                    f"- Rationale: {self.decision.rationale}",
                ]
            )
        lines.append(f"- Merge order: {_fmt_list(self.merge_order)}")
        if self.escalations:
            lines.extend(["", "## Escalations"])
            for decision in self.escalations:
                origin = decision.escalated_from.value if decision.escalated_from else "?"
                lines.append(f"- {origin} -> {decision.strategy.value}: {decision.rationale}")
        if self.runtime_conflicts:
            lines.extend(["", "## Runtime Conflicts"])
            for conflict in self.runtime_conflicts:
                lines.append(f"- {conflict.unit_a} / {conflict.unit_b}: {_fmt_list(list(conflict.paths))}")

        lines.extend(["", "## Units"])
        for unit in self.units:
            classification = classify_outcome(unit.status, unit.reason)
            lines.extend(
                [
                    "",
                    f"### {unit.unit_id} - {unit.title}",
                    f"- Status: {unit.status}",
                    f"- Reason: {unit.reason or '(none)'}",
                    f"- Dependencies: {_fmt_list(list(unit.depends_on))}",
                    f"- Score: {unit.score.total if unit.score else 'unavailable'}",
                    f"- Workspace: {unit.workspace or 'ambient'}",
                ]
            )
            if classification.next_action:
                lines.append(f"- Next action: {classification.next_action}")
            if unit.gate_history:
                lines.extend(["", "| Gate | Attempt | Verdict | Issues |", "|---|---|---|---|"])
                for result in unit.gate_history:
                    issues = "; ".join(f"[{i.severity.value}] {i.text}" for i in result.issues) or "-"
                    lines.append(f"| {result.gate.value} | {result.attempt} | {result.verdict.value} | {issues} |")
        return "\n".join(lines) + "\n"

    def write_markdown(self, path: Path | str) -> Path:
        path = Path(path)
        atomic_write_text(path, self.to_markdown())
        return path


def _fmt_list(items: list[str]) -> str:
    return ", ".join(items) if items else "(none)"
