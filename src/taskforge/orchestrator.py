# SPDX-License-Identifier: MIT
"""End-to-end orchestration of a decomposed task.

Data flow::

    task -> decompose -> score -> detect -> select -> provision
         -> execute (thread pool; direct runs inline)
         -> discover touched files -> gates -> consolidate -> report

Runtime ownership conflicts are resolved by re-planning, never by letting
the last writer win: the strategy is re-evaluated (escalation only), the
offending unit is re-scoped to include the contested paths and
re-sequenced behind the owner, and whatever it wrote is discarded along
with its workspace. Re-planning is bounded by ``execution.replan_budget``.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from taskforge.config import OrchestratorConfig
from taskforge.conflicts import Conflict, OwnershipLedger, detect_units
from taskforge.consolidate import ConsolidationCoordinator, Merger
from taskforge.decompose import Decomposer, Planner, topological_order
from taskforge.errors import (
    DecompositionFailed,
    DependencyCycle,
    GateExhausted,
    NoCapableExecutor,
    OwnershipConflict,
    UnitTooLarge,
)
from taskforge.gates import (
    AuthorizationSignal,
    Authorizer,
    BlockingIssue,
    Clock,
    Gate,
    GatePipeline,
    GateRunner,
    PipelineState,
    Verifier,
)
from taskforge.registry import ExecutorRegistry
from taskforge.report import IntegrationReport, UnitOutcome
from taskforge.scoring import ComplexityScore, score_units
from taskforge.strategy import Strategy, StrategyDecision, StrategySelector
from taskforge.units import TaskSpec, WorkUnit
from taskforge.workspace import (
    RECLAIMABLE,
    DirectoryBackend,
    Workspace,
    WorkspaceManager,
    WorkspaceState,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskContext:
    """Explicit per-task state handed to every collaborator call."""

    task_id: str
    title: str
    strategy: Strategy
    repo_root: Path | None = None
    existing_files: tuple[str, ...] = ()
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionResult:
    """What an executor reports back: touched files and a completion signal."""

    modified_paths: tuple[str, ...] = ()
    completed: bool = True
    summary: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionResult:
        return cls(
            modified_paths=tuple(data.get("modified_paths", [])),
            completed=bool(data.get("completed", False)),
            summary=str(data.get("summary", "")),
        )


class Executor(Protocol):
    def execute(
        self, unit: WorkUnit, workspace: Workspace | None, context: TaskContext
    ) -> ExecutionResult | Mapping[str, Any]: ...

    def remediate(
        self,
        unit: WorkUnit,
        workspace: Workspace | None,
        issues: Sequence[BlockingIssue],
        context: TaskContext,
    ) -> None: ...


OutcomeKind = Literal["integrated", "awaiting", "rejected", "conflict"]


@dataclass
class _Outcome:
    kind: OutcomeKind
    reason: str | None = None
    summary: str = ""
    conflicts: list[Conflict] = field(default_factory=list)


class Orchestrator:
    """Drives a task from unit drafts to an integration report.

    Args:
        verifiers: One verifier per gate except ``authorization``.
        executor: Executor used for every unit when no registry is given.
        registry: Capability-tagged registry matched against each unit.
        authorizer: Source of authorization signals; units wait without one.
        merger: Merges workspace branches during consolidation.
        workspaces: Workspace manager; defaults to plain directories under
            ``workspace.root``.
        planner: Optional planner used for re-decomposition feedback.
        per_chain: Under ``isolated-workspace``, one workspace per dependency chain.
        cleanup: Reclaim merged and discarded workspaces at the end of a run.
    """

    def __init__(
        self,
        *,
        verifiers: Mapping[Gate, Verifier],
        executor: Executor | None = None,
        registry: ExecutorRegistry | None = None,
        authorizer: Authorizer | None = None,
        merger: Merger | None = None,
        workspaces: WorkspaceManager | None = None,
        planner: Planner | None = None,
        config: OrchestratorConfig | None = None,
        repo_root: Path | None = None,
        clock: Clock | None = None,
        per_chain: bool = False,
        cleanup: bool = True,
    ) -> None:
        if executor is None and registry is None:
            raise ValueError("Either an executor or an executor registry is required")
        self.config = config or OrchestratorConfig()
        self.verifiers = dict(verifiers)
        # fail fast on a missing gate verifier
        GateRunner(self.verifiers, gates=self.config.gates)
        self.executor = executor
        self.registry = registry
        self.authorizer = authorizer
        self.merger = merger
        self.workspaces = workspaces or WorkspaceManager(
            DirectoryBackend(self.config.workspace.root), self.config.workspace
        )
        self.planner = planner
        self.repo_root = repo_root
        self.clock = clock
        self.per_chain = per_chain
        self.cleanup = cleanup
        self.decomposer = Decomposer(self.config.size)
        self.selector = StrategySelector(self.config.strategy)
        self._paused: dict[str, _TaskRun] = {}

    def executor_for(self, unit: WorkUnit) -> Executor:
        """Resolve the executor for ``unit``.

        Raises:
            NoCapableExecutor: If the registry has no match for the unit's capabilities.
            ValueError: If neither an executor nor a registry is configured.
        """
        if self.registry is not None:
            _, executor = self.registry.match(unit.capabilities)
            return executor
        if self.executor is None:
            raise ValueError("Either an executor or an executor registry is required")
        return self.executor

    def plan(self, task: TaskSpec) -> tuple[list[WorkUnit], dict[str, ComplexityScore], StrategyDecision]:
        """Decompose, score and select a strategy without executing anything."""
        units = self.decomposer.plan_units(
            task, self.planner, max_attempts=self.config.execution.decomposition_attempts
        )
        scores, _ = score_units(units)
        schedulable = [u for u in units if u.id in scores]
        decision = self.selector.select(schedulable, scores, detect_units(schedulable))
        return units, scores, decision

    def run(self, task: TaskSpec) -> IntegrationReport:
        """Run ``task`` end to end.

        Decomposition failure is the only task-level error; it is reported
        with status ``failed`` rather than raised. A run that ends with
        units awaiting authorization is kept for :meth:`resume`.
        """
        try:
            units = self.decomposer.plan_units(
                task, self.planner, max_attempts=self.config.execution.decomposition_attempts
            )
        except DecompositionFailed as exc:
            logger.error("Task %s failed decomposition: %s", task.id, exc)
            return IntegrationReport(task_id=task.id, title=task.title, status="failed", error=str(exc))
        task_run = _TaskRun(self, task, units)
        return self._keep_if_paused(task_run, task_run.execute())

    def awaiting(self) -> dict[str, list[str]]:
        """Unit ids awaiting authorization, per paused task id."""
        return {task_id: task_run.awaiting() for task_id, task_run in self._paused.items()}

    def resume(self, task_id: str, signals: Mapping[str, AuthorizationSignal]) -> IntegrationReport:
        """Continue a paused run with go/no-go signals keyed by unit id.

        Units given a signal finish their gates; dependents that were blocked
        on them are scheduled, then consolidation and cleanup run again.
        Signals for units that reach authorization later in the resumed run
        are used as well. Units left without a signal keep waiting.

        Raises:
            KeyError: If no run of ``task_id`` is awaiting authorization.
        """
        task_run = self._paused.get(task_id)
        if task_run is None:
            raise KeyError(f"No run of task {task_id} is awaiting authorization")
        return self._keep_if_paused(task_run, task_run.resume(signals))

    def _keep_if_paused(self, task_run: _TaskRun, report: IntegrationReport) -> IntegrationReport:
        if report.with_status("awaiting-authorization"):
            self._paused[task_run.task.id] = task_run
            logger.info(
                "Task %s paused awaiting authorization of %s",
                task_run.task.id,
                ", ".join(report.with_status("awaiting-authorization")),
            )
        else:
            self._paused.pop(task_run.task.id, None)
        return report


class _TaskRun:
    """Mutable state of one orchestrated run."""

    def __init__(self, orchestrator: Orchestrator, task: TaskSpec, units: list[WorkUnit]) -> None:
        self.o = orchestrator
        self.task = task
        self.units: dict[str, WorkUnit] = {u.id: u for u in units}
        self.order: list[str] = [u.id for u in units]
        self.status: dict[str, str] = {u.id: "pending" for u in units}
        self.reasons: dict[str, str] = {}
        self.summaries: dict[str, str] = {}
        self.pipelines: dict[str, GatePipeline] = {
            u.id: GatePipeline(u.id, orchestrator.config.gates, orchestrator.clock) for u in units
        }
        self.scores: dict[str, ComplexityScore] = {}
        self.ledger = OwnershipLedger()
        self.decision: StrategyDecision | None = None
        self.escalations: list[StrategyDecision] = []
        self.runtime_conflicts: list[Conflict] = []
        self.all_workspaces: dict[str, Workspace] = {}
        self.merge_order: list[str] = []
        self.signals: dict[str, AuthorizationSignal] = {}
        self.replans = 0
        self.context = TaskContext(
            task_id=task.id,
            title=task.title,
            strategy=Strategy.DIRECT,
            repo_root=orchestrator.repo_root,
            existing_files=task.existing_files,
        )

    # planning

    def _schedulable(self) -> list[WorkUnit]:
        return [self.units[uid] for uid in self.order if uid in self.scores]

    def _rescore(self) -> None:
        scores, unavailable = score_units([self.units[uid] for uid in self.order])
        self.scores = scores
        for uid, exc in unavailable.items():
            if self.status[uid] == "pending":
                self._reject(uid, str(exc))

    def _set_decision(self, decision: StrategyDecision) -> None:
        self.decision = decision
        self.context = dataclasses.replace(self.context, strategy=decision.strategy)

    # execution

    def execute(self) -> IntegrationReport:
        self._rescore()
        schedulable = self._schedulable()
        self._set_decision(self.o.selector.select(schedulable, self.scores, detect_units(schedulable)))
        logger.info("Task %s: %s", self.task.id, self.decision.rationale)

        self.ledger.register(schedulable)
        for workspace in self.o.workspaces.provision(
            self.decision.strategy, schedulable, per_chain=self.o.per_chain, label=self.task.id
        ):
            self.all_workspaces[workspace.handle] = workspace

        return self._run_to_completion()

    def resume(self, signals: Mapping[str, AuthorizationSignal]) -> IntegrationReport:
        self.signals.update(signals)
        for uid in self.awaiting():
            if uid in self.signals:
                self._handle(uid, self._continue(uid))
        self._reopen()
        return self._run_to_completion()

    def awaiting(self) -> list[str]:
        return [uid for uid in self.order if self.status[uid] == "awaiting-authorization"]

    def _run_to_completion(self) -> IntegrationReport:
        self._schedule()
        self._mark_blocked()
        self._consolidate()
        self._finish_workspaces()
        return self._report(list(self.merge_order))

    def _reopen(self) -> None:
        """Return blocked units to the schedule after an earlier pause."""
        for uid in self.order:
            if self.status[uid] != "blocked":
                continue
            workspace = self._housing(uid)
            if workspace is not None and workspace.state is WorkspaceState.DISCARDED:
                continue
            self.reasons.pop(uid, None)
            if self.pipelines[uid].state is PipelineState.INTEGRATED:
                self.status[uid] = "integrated"
            else:
                self.status[uid] = "pending"

    def _ready(self, running: Mapping[str, Any]) -> list[str]:
        ready = []
        for unit in topological_order([self.units[u] for u in self.order]):
            unit_id = unit.id
            if self.status[unit_id] != "pending" or unit_id in running:
                continue
            if self.ledger.is_suspended(unit_id):
                continue
            if all(self.status.get(dep) == "integrated" for dep in unit.depends_on):
                ready.append(unit_id)
        return ready

    def _schedule(self) -> None:
        max_workers = self.o.config.execution.max_workers
        running: dict[str, concurrent.futures.Future[_Outcome]] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as pool:
            while True:
                ready = self._ready(running)

                if self.decision.strategy is Strategy.DIRECT and not running:
                    if not ready:
                        break
                    uid = ready[0]
                    if self._begin(uid):
                        self._handle(uid, self._work(uid))
                    continue

                if self.decision.strategy is not Strategy.DIRECT:
                    for uid in ready:
                        if len(running) >= max_workers:
                            break
                        if not self.ledger.is_available(uid):
                            continue
                        if self._begin(uid):
                            logger.info("Starting %s (%d running)", uid, len(running) + 1)
                            running[uid] = pool.submit(self._work, uid)

                if not running:
                    break

                done, _ = concurrent.futures.wait(
                    running.values(), return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in done:
                    uid = next(u for u, f in running.items() if f is future)
                    del running[uid]
                    self._handle(uid, future.result())

    def _begin(self, uid: str) -> bool:
        try:
            self.ledger.acquire(uid)
        except OwnershipConflict as exc:
            logger.debug("Deferring %s: %s", uid, exc)
            return False
        self.status[uid] = "running"
        return True

    def _workspace_for(self, unit: WorkUnit) -> Workspace | None:
        manager = self.o.workspaces
        workspace = manager.workspace_for(unit.id)
        if workspace is not None and workspace.state not in RECLAIMABLE:
            return workspace
        if self.decision.strategy is Strategy.DIRECT:
            return None
        workspace = manager.provision_isolated(unit)
        self.all_workspaces[workspace.handle] = workspace
        return workspace

    def _work(self, uid: str) -> _Outcome:
        """Execute one unit and drive its gates. Runs in a worker thread."""
        unit = self.units[uid]
        context = self.context
        summary = ""
        try:
            executor = self.o.executor_for(unit)
            workspace = self._workspace_for(unit)
            if workspace is not None and workspace.state is WorkspaceState.PROVISIONED:
                self.o.workspaces.activate(workspace)

            raw = executor.execute(unit, workspace, context)
            result = raw if isinstance(raw, ExecutionResult) else ExecutionResult.from_dict(raw)
            summary = result.summary
            if not result.completed:
                return _Outcome("rejected", reason=f"executor did not complete: {summary}", summary=summary)

            conflicts = self.ledger.discover(uid, result.modified_paths)
            if conflicts:
                return _Outcome("conflict", summary=summary, conflicts=conflicts)

            return self._run_gates(unit, executor, workspace, summary)
        except NoCapableExecutor as exc:
            return _Outcome("rejected", reason=str(exc))
        except GateExhausted as exc:
            return _Outcome("rejected", reason=str(exc), summary=summary)
        except Exception as exc:
            logger.exception("Unit %s raised during execution", uid)
            return _Outcome("rejected", reason=f"executor error: {exc}")

    def _continue(self, uid: str) -> _Outcome:
        """Resume the gates of a unit that was waiting on authorization."""
        unit = self.units[uid]
        summary = self.summaries.get(uid, "")
        try:
            executor = self.o.executor_for(unit)
            return self._run_gates(unit, executor, self.o.workspaces.workspace_for(uid), summary)
        except GateExhausted as exc:
            return _Outcome("rejected", reason=str(exc), summary=summary)
        except Exception as exc:
            logger.exception("Unit %s raised while resuming its gates", uid)
            return _Outcome("rejected", reason=f"executor error: {exc}")

    def _run_gates(
        self, unit: WorkUnit, executor: Executor, workspace: Workspace | None, summary: str
    ) -> _Outcome:
        runner = GateRunner(
            self.o.verifiers,
            authorizer=self._authorize,
            remediate=executor.remediate,
            gates=self.o.config.gates,
            clock=self.o.clock,
        )
        pipeline = runner.run(self.pipelines[unit.id], unit, workspace, self.context)
        if pipeline.state is PipelineState.INTEGRATED:
            return _Outcome("integrated", summary=summary)
        return _Outcome("awaiting", summary=summary)

    def _authorize(self, unit: WorkUnit, history: Sequence[Any]) -> AuthorizationSignal | None:
        # a resumed signal is consumed once
        signal = self.signals.pop(unit.id, None)
        if signal is not None:
            return signal
        if self.o.authorizer is None:
            return None
        return self.o.authorizer(unit, history)

    def _handle(self, uid: str, outcome: _Outcome) -> None:
        self.ledger.release(uid)
        if outcome.summary:
            self.summaries[uid] = outcome.summary

        workspace = self.o.workspaces.workspace_for(uid)
        if outcome.kind != "conflict" and workspace is not None and workspace.state is WorkspaceState.DISCARDED:
            # output landed in a workspace discarded by a co-owner's conflict
            self._requeue(uid)
            return

        if outcome.kind == "integrated":
            self.status[uid] = "integrated"
            logger.info("%s integrated", uid)
        elif outcome.kind == "awaiting":
            self.status[uid] = "awaiting-authorization"
        elif outcome.kind == "rejected":
            self._reject(uid, outcome.reason or "rejected")
            if workspace is not None and workspace.owners == (uid,) and workspace.state not in RECLAIMABLE:
                self.o.workspaces.discard(workspace)
        else:
            self._resolve_conflict(uid, outcome.conflicts)

    def _reject(self, uid: str, reason: str) -> None:
        self.status[uid] = "rejected"
        self.reasons[uid] = reason
        logger.warning("%s rejected: %s", uid, reason)

    def _requeue(self, uid: str) -> None:
        self.status[uid] = "pending"
        self.pipelines[uid].restart()
        logger.info("%s re-queued for a fresh workspace", uid)

    # conflicts

    def _resolve_conflict(self, offender: str, conflicts: list[Conflict]) -> None:
        self.runtime_conflicts.extend(conflicts)
        self.replans += 1
        owners = sorted({c.other(offender) for c in conflicts})
        paths = sorted({p for c in conflicts for p in c.paths})
        budget = self.o.config.execution.replan_budget

        workspace = self.o.workspaces.workspace_for(offender)
        self._discard_output(offender, workspace)

        if self.replans > budget:
            self._reject(
                offender,
                f"ownership conflict with {', '.join(owners)} on {', '.join(paths)} "
                f"unresolved within replan budget ({budget})",
            )
            for uid in [offender, *owners]:
                self.ledger.resume(self.units[uid])
            return

        previous = self.decision
        self._set_decision(
            self.o.selector.reevaluate(previous, self._schedulable(), self.scores, conflicts)
        )
        if self.decision.strategy is not previous.strategy:
            self.escalations.append(self.decision)

        units = [self.units[uid] for uid in self.order]
        try:
            for conflict in conflicts:
                units = self.o.decomposer.resequence(
                    units, offender=offender, owner=conflict.other(offender), paths=conflict.paths
                )
        except (DependencyCycle, UnitTooLarge) as exc:
            self._reject(offender, f"ownership conflict with {', '.join(owners)} cannot be re-planned: {exc}")
            for uid in [offender, *owners]:
                self.ledger.resume(self.units[uid])
            return

        self.units = {u.id: u for u in units}
        self.order = [u.id for u in units]
        self._rescore()
        for uid in [offender, *owners]:
            self.ledger.resume(self.units[uid])
        if self.status[offender] != "rejected":
            self._requeue(offender)

    def _discard_output(self, offender: str, workspace: Workspace | None) -> None:
        if workspace is None or workspace.state in RECLAIMABLE:
            return
        manager = self.o.workspaces
        manager.discard(workspace)
        if workspace.owners == (offender,):
            manager.reclaim(workspace)
            return
        for uid in workspace.owners:
            if uid != offender and self.status.get(uid) in ("integrated", "awaiting-authorization"):
                self._requeue(uid)

    # wrap-up

    def _mark_blocked(self) -> None:
        for unit in topological_order([self.units[uid] for uid in self.order]):
            if self.status[unit.id] != "pending":
                continue
            failed = [d for d in unit.depends_on if self.status.get(d) != "integrated"]
            detail = ", ".join(f"{d} is {self.status.get(d, 'unknown')}" for d in failed)
            self.status[unit.id] = "blocked"
            self.reasons[unit.id] = f"prerequisite not integrated: {detail}" if failed else "never scheduled"

    def _consolidate(self) -> None:
        manager = self.o.workspaces
        integrated = {uid for uid, s in self.status.items() if s == "integrated"}
        workspace_of: dict[str, Workspace | None] = {}
        for uid in self.order:
            workspace = manager.workspace_for(uid)
            workspace_of[uid] = workspace if workspace is not None and workspace.state not in RECLAIMABLE else None

        coordinator = ConsolidationCoordinator(self.o.merger, manager)
        result = coordinator.consolidate(
            [self.units[uid] for uid in self.order], integrated, workspace_of, already_merged=self.merge_order
        )
        for uid, reason in result.failed.items():
            self._reject(uid, f"merge incompatible: {reason}")
        for uid, reason in result.blocked.items():
            self.status[uid] = "blocked"
            self.reasons[uid] = reason
        self.merge_order.extend(result.merge_order)

    def _finish_workspaces(self) -> None:
        manager = self.o.workspaces
        for workspace in list(self.all_workspaces.values()):
            if workspace.state in RECLAIMABLE:
                continue
            if any(self.status.get(uid) == "rejected" for uid in workspace.owners):
                manager.discard(workspace)
        if self.o.cleanup:
            manager.reclaim_finished()

    def _housing(self, uid: str) -> Workspace | None:
        """The live workspace of ``uid``, else the last one that housed it."""
        workspace = self.o.workspaces.workspace_for(uid)
        if workspace is not None:
            return workspace
        return next((ws for ws in reversed(list(self.all_workspaces.values())) if uid in ws.owners), None)

    def _report(self, merge_order: list[str]) -> IntegrationReport:
        outcomes = []
        for unit in topological_order([self.units[uid] for uid in self.order]):
            workspace = self._housing(unit.id)
            handle = workspace.handle if workspace is not None else None
            outcomes.append(
                UnitOutcome(
                    unit_id=unit.id,
                    title=unit.title,
                    status=self.status[unit.id],
                    reason=self.reasons.get(unit.id),
                    depends_on=unit.depends_on,
                    score=self.scores.get(unit.id),
                    workspace=handle,
                    gate_history=list(self.pipelines[unit.id].history),
                    summary=self.summaries.get(unit.id, ""),
                )
            )
        complete = all(o.status == "integrated" for o in outcomes)
        return IntegrationReport(
            task_id=self.task.id,
            title=self.task.title,
            status="complete" if complete else "incomplete",
            decision=self.decision,
            escalations=list(self.escalations),
            units=outcomes,
            merge_order=merge_order,
            runtime_conflicts=list(self.runtime_conflicts),
            workspaces=[ws.to_dict() for ws in self.all_workspaces.values()],
        )
