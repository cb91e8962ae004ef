# SPDX-License-Identifier: MIT
"""Quality gate pipeline.

Each unit's output passes five gates in a fixed order::

    build-test -> review -> security -> authorization -> integrate

A failed verdict hands the unit back to its executor for remediation and
re-enters the same gate; earlier passes stay in the history and are not
re-run. ``authorization`` consumes only an explicit go/no-go signal and
otherwise waits indefinitely. Spending a gate's retry budget is terminal
(``terminal-rejected``); passing ``integrate`` is ``terminal-integrated``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from taskforge.config import GateConfig
from taskforge.errors import GateExhausted, GateFailed, GateOrderError

logger = logging.getLogger(__name__)


class Gate(str, Enum):
    BUILD_TEST = "build-test"
    REVIEW = "review"
    SECURITY = "security"
    AUTHORIZATION = "authorization"
    INTEGRATE = "integrate"


GATE_ORDER: tuple[Gate, ...] = tuple(Gate)


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PipelineState(str, Enum):
    PENDING = "pending"
    FAILED = "failed"
    INTEGRATED = "terminal-integrated"
    REJECTED = "terminal-rejected"


@dataclass(frozen=True)
class BlockingIssue:
    text: str
    severity: Severity = Severity.HIGH

    @classmethod
    def coerce(cls, value: BlockingIssue | str | Mapping[str, Any]) -> BlockingIssue:
        """Accept a plain string, a ``{text, severity}`` mapping or an issue."""
        if isinstance(value, BlockingIssue):
            return value
        if isinstance(value, str):
            return cls(text=value)
        return cls(text=str(value["text"]), severity=Severity(value.get("severity", "high")))

    def to_dict(self) -> dict[str, str]:
        return {"text": self.text, "severity": self.severity.value}


@dataclass(frozen=True)
class GateResult:
    unit_id: str
    gate: Gate
    verdict: Verdict
    issues: tuple[BlockingIssue, ...]
    timestamp: datetime
    attempt: int

    @property
    def passed(self) -> bool:
        return self.verdict is Verdict.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "gate": self.gate.value,
            "verdict": self.verdict.value,
            "issues": [i.to_dict() for i in self.issues],
            "timestamp": self.timestamp.isoformat(),
            "attempt": self.attempt,
        }


@dataclass(frozen=True)
class VerifierResult:
    """Normalized verdict from an external verifier."""

    verdict: Verdict
    blocking_issues: tuple[BlockingIssue, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VerifierResult:
        """Create from a ``{verdict: pass|fail, blocking_issues: [...]}`` mapping."""
        return cls(
            verdict=Verdict(data.get("verdict", "fail")),
            blocking_issues=tuple(BlockingIssue.coerce(i) for i in data.get("blocking_issues", [])),
        )

    @classmethod
    def passed(cls) -> VerifierResult:
        return cls(Verdict.PASS)

    @classmethod
    def failed(cls, *issues: BlockingIssue | str) -> VerifierResult:
        return cls(Verdict.FAIL, tuple(BlockingIssue.coerce(i) for i in issues))


@dataclass(frozen=True)
class AuthorizationSignal:
    """Explicit go/no-go from the human authorizer."""

    go: bool
    actor: str = ""
    reason: str = ""


Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GatePipeline:
    """Per-unit gate state machine with an append-only history.

    State is ``(gate, state)``: ``pending``/``failed`` at the current gate,
    or one of the two terminal states. Passing a gate moves straight to
    ``pending`` of the next one; ``passed(gate)`` is recorded in history.
    """

    def __init__(
        self,
        unit_id: str,
        gates: GateConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.unit_id = unit_id
        self.gates = gates or GateConfig()
        self.clock = clock or _utcnow
        self.gate: Gate = Gate.BUILD_TEST
        self.state = PipelineState.PENDING
        self.history: list[GateResult] = []
        self.attempts: dict[Gate, int] = {g: 0 for g in GATE_ORDER}
        self.open_issues: tuple[BlockingIssue, ...] = ()
        self.rejection: GateExhausted | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (PipelineState.INTEGRATED, PipelineState.REJECTED)

    @property
    def awaiting_authorization(self) -> bool:
        return self.gate is Gate.AUTHORIZATION and self.state is PipelineState.PENDING

    def budget(self, gate: Gate) -> int:
        return self.gates.budget_for(gate.value)

    def has_passed(self, gate: Gate) -> bool:
        gate = Gate(gate)
        return any(r.gate is gate and r.passed for r in self.history)

    def describe(self) -> str:
        if self.is_terminal:
            return self.state.value
        return f"{self.state.value}({self.gate.value})"

    def record(
        self,
        gate: Gate,
        verdict: Verdict,
        issues: Sequence[BlockingIssue | str] = (),
    ) -> GateResult:
        """Record a verifier verdict for the current gate.

        Raises:
            GateOrderError: If ``gate`` is not the current pending gate, the
                current gate has an unresolved fail, or ``gate`` is
                ``authorization`` (use :meth:`authorize`).
        """
        gate, verdict = Gate(gate), Verdict(verdict)
        if gate is Gate.AUTHORIZATION:
            raise GateOrderError(f"{self.unit_id}: authorization requires an explicit signal")
        return self._record(gate, verdict, tuple(BlockingIssue.coerce(i) for i in issues))

    def authorize(self, signal: AuthorizationSignal) -> GateResult:
        """Consume the go/no-go signal at the authorization gate.

        A no-go counts as a failed authorization attempt.
        """
        if signal.go:
            return self._record(Gate.AUTHORIZATION, Verdict.PASS, ())
        reason = signal.reason or "authorization declined"
        if signal.actor:
            reason = f"{reason} (by {signal.actor})"
        return self._record(Gate.AUTHORIZATION, Verdict.FAIL, (BlockingIssue(reason, Severity.HIGH),))

    def _record(self, gate: Gate, verdict: Verdict, issues: tuple[BlockingIssue, ...]) -> GateResult:
        if self.is_terminal:
            raise GateOrderError(f"{self.unit_id}: pipeline already {self.state.value}")
        if gate is not self.gate:
            raise GateOrderError(f"{self.unit_id}: verdict for {gate.value} while pending {self.gate.value}")
        if self.state is PipelineState.FAILED:
            raise GateOrderError(f"{self.unit_id}: {gate.value} has an unresolved fail; retry() first")

        self.attempts[gate] += 1
        result = GateResult(
            unit_id=self.unit_id,
            gate=gate,
            verdict=verdict,
            issues=issues,
            timestamp=self.clock(),
            attempt=self.attempts[gate],
        )
        self.history.append(result)

        if verdict is Verdict.PASS:
            self.open_issues = ()
            logger.info("%s passed %s (attempt %d)", self.unit_id, gate.value, result.attempt)
            if gate is Gate.INTEGRATE:
                self.state = PipelineState.INTEGRATED
            else:
                self.gate = GATE_ORDER[GATE_ORDER.index(gate) + 1]
                self.state = PipelineState.PENDING
            return result

        self.open_issues = issues
        budget = self.budget(gate)
        if self.attempts[gate] >= budget:
            self.state = PipelineState.REJECTED
            self.rejection = GateExhausted(self.unit_id, gate, self.attempts[gate], issues)
            logger.warning("%s rejected at %s after %d attempt(s)", self.unit_id, gate.value, self.attempts[gate])
        else:
            self.state = PipelineState.FAILED
            logger.info(
                "%s failed %s (attempt %d/%d): %s",
                self.unit_id,
                gate.value,
                self.attempts[gate],
                budget,
                "; ".join(i.text for i in issues) or "no issues reported",
            )
        return result

    def retry(self) -> None:
        """Re-enter ``pending`` of the failed gate after remediation."""
        if self.state is not PipelineState.FAILED:
            raise GateOrderError(f"{self.unit_id}: nothing to retry in state {self.describe()}")
        self.state = PipelineState.PENDING

    def restart(self) -> None:
        """Start over from build-test after the unit's output was discarded.

        History is kept; attempt counters restart for the new output.
        """
        self.gate = Gate.BUILD_TEST
        self.state = PipelineState.PENDING
        self.attempts = {g: 0 for g in GATE_ORDER}
        self.open_issues = ()
        self.rejection = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "state": self.describe(),
            "history": [r.to_dict() for r in self.history],
        }


class Verifier(Protocol):
    def verify(self, unit: Any, workspace: Any, context: Any) -> VerifierResult | Mapping[str, Any]: ...


# Authorizer: (unit, gate history) -> signal, or None when no decision yet
Authorizer = Callable[[Any, Sequence[GateResult]], AuthorizationSignal | None]
# Remediator: (unit, workspace, blocking issues, context) -> None
Remediator = Callable[[Any, Any, Sequence[BlockingIssue], Any], None]

VERIFIED_GATES: tuple[Gate, ...] = tuple(g for g in GATE_ORDER if g is not Gate.AUTHORIZATION)


@dataclass
class GateRunner:
    """Drives a pipeline against external verifiers.

    Args:
        verifiers: One verifier per gate except ``authorization``.
        authorizer: Supplies authorization signals; ``None`` means none arrive.
        remediate: Called with the blocking issues after each recoverable fail.
    """

    verifiers: Mapping[Gate, Verifier]
    authorizer: Authorizer | None = None
    remediate: Remediator | None = None
    gates: GateConfig = field(default_factory=GateConfig)
    clock: Clock | None = None

    def __post_init__(self) -> None:
        self.verifiers = {Gate(g): v for g, v in self.verifiers.items()}
        missing = [g.value for g in VERIFIED_GATES if g not in self.verifiers]
        if missing:
            raise ValueError(f"No verifier configured for gate(s): {', '.join(missing)}")

    def new_pipeline(self, unit_id: str) -> GatePipeline:
        return GatePipeline(unit_id, self.gates, self.clock)

    def run(self, pipeline: GatePipeline, unit: Any, workspace: Any, context: Any = None) -> GatePipeline:
        """Advance ``pipeline`` as far as verdicts allow.

        Returns the pipeline when it is integrated or waiting on
        authorization.

        Raises:
            GateExhausted: When a gate's retry budget is spent.
        """
        while not pipeline.is_terminal:
            if pipeline.state is PipelineState.FAILED:
                pipeline.retry()
            try:
                if not self._step(pipeline, unit, workspace, context):
                    return pipeline
            except GateFailed as exc:
                if self.remediate is not None:
                    self.remediate(unit, workspace, exc.issues, context)
        if pipeline.rejection is not None:
            raise pipeline.rejection
        return pipeline

    def _step(self, pipeline: GatePipeline, unit: Any, workspace: Any, context: Any) -> bool:
        """Run the current gate once; False when waiting on authorization."""
        gate = pipeline.gate
        if gate is Gate.AUTHORIZATION:
            signal = self.authorizer(unit, tuple(pipeline.history)) if self.authorizer else None
            if signal is None:
                logger.info("%s awaiting authorization", pipeline.unit_id)
                return False
            result = pipeline.authorize(signal)
        else:
            raw = self.verifiers[gate].verify(unit, workspace, context)
            outcome = raw if isinstance(raw, VerifierResult) else VerifierResult.from_dict(raw)
            result = pipeline.record(gate, outcome.verdict, outcome.blocking_issues)

        if not result.passed and pipeline.state is PipelineState.FAILED:
            raise GateFailed(pipeline.unit_id, gate, result.issues, result.attempt)
        return True
