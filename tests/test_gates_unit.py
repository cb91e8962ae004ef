# SPDX-License-Identifier: MIT
"""Unit tests for taskforge/gates.py.

Covers:
- Fixed gate order and the append-only history
- Failure, remediation and re-entry of the same gate
- Retry budget exhaustion (terminal-rejected)
- Explicit authorization signals
- GateRunner driving external verifiers
"""

from __future__ import annotations

import pytest

from taskforge.config import GateConfig
from taskforge.errors import GateExhausted, GateOrderError
from taskforge.gates import (
    GATE_ORDER,
    AuthorizationSignal,
    BlockingIssue,
    Gate,
    GatePipeline,
    GateRunner,
    PipelineState,
    Severity,
    Verdict,
    VerifierResult,
)


def _pass_through(pipeline: GatePipeline, *gates: Gate) -> None:
    for gate in gates:
        pipeline.record(gate, Verdict.PASS)


# -----------------------------------------------------------------------------
# GatePipeline
# -----------------------------------------------------------------------------


class TestGatePipeline:
    """Tests for the per-unit gate state machine."""

    def test_order(self) -> None:
        assert [g.value for g in GATE_ORDER] == ["build-test", "review", "security", "authorization", "integrate"]

    def test_happy_path(self, fixed_clock) -> None:
        pipeline = GatePipeline("U1", clock=fixed_clock)
        assert pipeline.describe() == "pending(build-test)"
        _pass_through(pipeline, Gate.BUILD_TEST, Gate.REVIEW, Gate.SECURITY)
        assert pipeline.awaiting_authorization
        pipeline.authorize(AuthorizationSignal(go=True, actor="lead"))
        pipeline.record(Gate.INTEGRATE, Verdict.PASS)

        assert pipeline.state is PipelineState.INTEGRATED
        assert pipeline.describe() == "terminal-integrated"
        assert [r.gate for r in pipeline.history] == list(GATE_ORDER)
        assert all(r.timestamp == fixed_clock() for r in pipeline.history)

    def test_security_failure_returns_to_pending_security(self) -> None:
        """A fail keeps earlier passes in history and re-enters the same gate."""
        pipeline = GatePipeline("U1")
        _pass_through(pipeline, Gate.BUILD_TEST, Gate.REVIEW)
        result = pipeline.record(Gate.SECURITY, Verdict.FAIL, ["hardcoded secret in config.py"])

        assert result.attempt == 1
        assert pipeline.describe() == "failed(security)"
        assert pipeline.open_issues == (BlockingIssue("hardcoded secret in config.py"),)

        pipeline.retry()
        assert pipeline.describe() == "pending(security)"
        assert pipeline.has_passed(Gate.BUILD_TEST) and pipeline.has_passed(Gate.REVIEW)
        assert [(r.gate, r.verdict) for r in pipeline.history] == [
            (Gate.BUILD_TEST, Verdict.PASS),
            (Gate.REVIEW, Verdict.PASS),
            (Gate.SECURITY, Verdict.FAIL),
        ]

        second = pipeline.record(Gate.SECURITY, Verdict.PASS)
        assert second.attempt == 2
        assert pipeline.gate is Gate.AUTHORIZATION
        assert pipeline.open_issues == ()

    def test_out_of_order_verdict_rejected(self) -> None:
        pipeline = GatePipeline("U1")
        with pytest.raises(GateOrderError, match="while pending build-test"):
            pipeline.record(Gate.REVIEW, Verdict.PASS)

    def test_unresolved_fail_requires_retry(self) -> None:
        pipeline = GatePipeline("U1")
        pipeline.record(Gate.BUILD_TEST, Verdict.FAIL)
        with pytest.raises(GateOrderError, match="retry"):
            pipeline.record(Gate.BUILD_TEST, Verdict.PASS)

    def test_authorization_needs_explicit_signal(self) -> None:
        pipeline = GatePipeline("U1")
        _pass_through(pipeline, Gate.BUILD_TEST, Gate.REVIEW, Gate.SECURITY)
        with pytest.raises(GateOrderError, match="explicit signal"):
            pipeline.record(Gate.AUTHORIZATION, Verdict.PASS)

    def test_budget_exhaustion_is_terminal(self) -> None:
        pipeline = GatePipeline("U1", GateConfig(retry_budgets={"build-test": 2}))
        pipeline.record(Gate.BUILD_TEST, Verdict.FAIL, ["tests fail"])
        pipeline.retry()
        pipeline.record(Gate.BUILD_TEST, Verdict.FAIL, ["tests still fail"])

        assert pipeline.state is PipelineState.REJECTED
        assert isinstance(pipeline.rejection, GateExhausted)
        assert pipeline.rejection.attempts == 2
        with pytest.raises(GateOrderError, match="already terminal-rejected"):
            pipeline.record(Gate.BUILD_TEST, Verdict.PASS)

    def test_no_go_rejects_with_default_budget(self) -> None:
        pipeline = GatePipeline("U1")
        _pass_through(pipeline, Gate.BUILD_TEST, Gate.REVIEW, Gate.SECURITY)
        result = pipeline.authorize(AuthorizationSignal(go=False, actor="lead", reason="not this sprint"))
        assert pipeline.state is PipelineState.REJECTED
        assert result.issues[0].text == "not this sprint (by lead)"

    def test_restart_keeps_history(self) -> None:
        pipeline = GatePipeline("U1")
        _pass_through(pipeline, Gate.BUILD_TEST, Gate.REVIEW)
        pipeline.restart()
        assert pipeline.describe() == "pending(build-test)"
        assert len(pipeline.history) == 2
        assert pipeline.record(Gate.BUILD_TEST, Verdict.PASS).attempt == 1

    def test_retry_without_failure(self) -> None:
        with pytest.raises(GateOrderError):
            GatePipeline("U1").retry()

    def test_accepts_string_values(self) -> None:
        pipeline = GatePipeline("U1")
        pipeline.record("build-test", "pass")
        assert pipeline.has_passed("build-test")

    def test_to_dict(self) -> None:
        pipeline = GatePipeline("U1")
        pipeline.record(Gate.BUILD_TEST, Verdict.FAIL, [{"text": "flaky", "severity": "low"}])
        data = pipeline.to_dict()
        assert data["state"] == "failed(build-test)"
        assert data["history"][0]["issues"] == [{"text": "flaky", "severity": "low"}]


# -----------------------------------------------------------------------------
# Verifier results
# -----------------------------------------------------------------------------


class TestVerifierResult:
    """Tests for verdict normalization."""

    def test_from_dict(self) -> None:
        result = VerifierResult.from_dict(
            {"verdict": "fail", "blocking_issues": ["a", {"text": "b", "severity": "critical"}]}
        )
        assert result.verdict is Verdict.FAIL
        assert result.blocking_issues[1] == BlockingIssue("b", Severity.CRITICAL)

    def test_missing_verdict_is_fail(self) -> None:
        assert VerifierResult.from_dict({}).verdict is Verdict.FAIL


# -----------------------------------------------------------------------------
# GateRunner
# -----------------------------------------------------------------------------


class TestGateRunner:
    """Tests for GateRunner with scripted verifiers."""

    def test_missing_verifier(self, make_verifiers) -> None:
        verifiers = make_verifiers()
        del verifiers[Gate.SECURITY]
        with pytest.raises(ValueError, match="security"):
            GateRunner(verifiers)

    def test_runs_to_integrated(self, make_unit, make_verifiers, approve_all) -> None:
        runner = GateRunner(make_verifiers(), authorizer=approve_all)
        pipeline = runner.run(runner.new_pipeline("U1"), make_unit("U1", files=["a.py"]), None)
        assert pipeline.state is PipelineState.INTEGRATED

    def test_remediates_and_reenters(self, make_unit, make_verifiers, approve_all) -> None:
        remediations = []
        verifiers = make_verifiers(security={"U1": [["hardcoded secret"]]})
        runner = GateRunner(
            verifiers,
            authorizer=approve_all,
            remediate=lambda unit, ws, issues, ctx: remediations.append([i.text for i in issues]),
        )
        pipeline = runner.run(runner.new_pipeline("U1"), make_unit("U1", files=["a.py"]), None)

        assert pipeline.state is PipelineState.INTEGRATED
        assert remediations == [["hardcoded secret"]]
        assert verifiers[Gate.SECURITY].calls == ["U1", "U1"]
        assert verifiers[Gate.BUILD_TEST].calls == ["U1"]

    def test_waits_for_authorization(self, make_unit, make_verifiers) -> None:
        runner = GateRunner(make_verifiers())
        pipeline = runner.run(runner.new_pipeline("U1"), make_unit("U1", files=["a.py"]), None)
        assert pipeline.awaiting_authorization
        assert pipeline.state is PipelineState.PENDING

    def test_resumes_after_authorization(self, make_unit, make_verifiers, approve_all) -> None:
        unit = make_unit("U1", files=["a.py"])
        verifiers = make_verifiers()
        waiting = GateRunner(verifiers).run(GatePipeline("U1"), unit, None)
        resumed = GateRunner(verifiers, authorizer=approve_all).run(waiting, unit, None)
        assert resumed.state is PipelineState.INTEGRATED
        assert verifiers[Gate.BUILD_TEST].calls == ["U1"]

    def test_exhaustion_raises(self, make_unit, make_verifiers) -> None:
        verifiers = make_verifiers(review={"U1": [["x"], ["y"]]})
        runner = GateRunner(verifiers, gates=GateConfig(retry_budgets={"review": 2}))
        with pytest.raises(GateExhausted) as excinfo:
            runner.run(runner.new_pipeline("U1"), make_unit("U1", files=["a.py"]), None)
        assert excinfo.value.gate is Gate.REVIEW

    def test_accepts_mapping_verdicts(self, make_unit, approve_all) -> None:
        class DictVerifier:
            def verify(self, unit, workspace, context):
                return {"verdict": "pass", "blocking_issues": []}

        runner = GateRunner({g: DictVerifier() for g in Gate if g is not Gate.AUTHORIZATION}, authorizer=approve_all)
        pipeline = runner.run(runner.new_pipeline("U1"), make_unit("U1"), None)
        assert pipeline.state is PipelineState.INTEGRATED
