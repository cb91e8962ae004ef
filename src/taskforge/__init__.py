# SPDX-License-Identifier: MIT
"""taskforge: orchestration core for multi-agent development work.

Given a task, taskforge decomposes it into bounded work units, scores their
complexity to pick a concurrency strategy, guards file ownership between
concurrently running units, and drives every unit through a fixed-order
verification pipeline before merging in dependency order.

Public API
----------
- :class:`Orchestrator` - run a task end to end and get an :class:`IntegrationReport`
- :class:`Decomposer` - validate unit drafts into an ordered unit graph
- :func:`score` - complexity score of a single unit
- :func:`select` - execution strategy for scored units
- :func:`detect` - ownership conflicts between file claims
- :class:`GatePipeline` - the per-unit gate state machine
- :class:`WorkspaceManager` - workspace provisioning and lifecycle

Example
-------
>>> from taskforge import Orchestrator, load_task_from_file
>>> task = load_task_from_file("task.yaml")
>>> report = Orchestrator(executor=executor, verifiers=verifiers, merger=merger).run(task)
>>> report.status
'complete'
"""

from __future__ import annotations

__version__ = "0.1.0"

from taskforge.config import OrchestratorConfig, load_config
from taskforge.conflicts import Conflict, FileOwnershipClaim, OwnershipLedger, detect, detect_units
from taskforge.consolidate import ConsolidationCoordinator, ConsolidationReport, GitMerger
from taskforge.decompose import Decomposer, suggest_split_axis, topological_order
from taskforge.errors import (
    ConfigError,
    DecompositionFailed,
    DependencyCycle,
    GateExhausted,
    GateFailed,
    GateOrderError,
    InvalidUnitGraph,
    MergeIncompatible,
    NoCapableExecutor,
    OwnershipConflict,
    ScoreUnavailable,
    TaskforgeError,
    TaskSpecError,
    UnitTooLarge,
    WorkspaceStateError,
)
from taskforge.gates import (
    AuthorizationSignal,
    BlockingIssue,
    Gate,
    GatePipeline,
    GateResult,
    GateRunner,
    PipelineState,
    Severity,
    Verdict,
    VerifierResult,
)
from taskforge.orchestrator import ExecutionResult, Orchestrator, TaskContext
from taskforge.registry import AgentProfile, ExecutorRegistry
from taskforge.report import IntegrationReport, UnitOutcome
from taskforge.scoring import ComplexityScore, score, score_units
from taskforge.strategy import Strategy, StrategyDecision, StrategySelector, conflict_groups, select
from taskforge.units import FileChange, TaskSpec, WorkUnit, load_task, load_task_from_file
from taskforge.workspace import (
    DirectoryBackend,
    GitWorktreeBackend,
    Workspace,
    WorkspaceManager,
    WorkspaceState,
)

__all__ = [
    "__version__",
    # Model
    "FileChange",
    "TaskSpec",
    "WorkUnit",
    "load_task",
    "load_task_from_file",
    # Planning
    "Decomposer",
    "suggest_split_axis",
    "topological_order",
    "ComplexityScore",
    "score",
    "score_units",
    "Strategy",
    "StrategyDecision",
    "StrategySelector",
    "conflict_groups",
    "select",
    # Ownership
    "Conflict",
    "FileOwnershipClaim",
    "OwnershipLedger",
    "detect",
    "detect_units",
    # Workspaces
    "DirectoryBackend",
    "GitWorktreeBackend",
    "Workspace",
    "WorkspaceManager",
    "WorkspaceState",
    # Gates
    "AuthorizationSignal",
    "BlockingIssue",
    "Gate",
    "GatePipeline",
    "GateResult",
    "GateRunner",
    "PipelineState",
    "Severity",
    "Verdict",
    "VerifierResult",
    # Consolidation and execution
    "ConsolidationCoordinator",
    "ConsolidationReport",
    "GitMerger",
    "AgentProfile",
    "ExecutorRegistry",
    "ExecutionResult",
    "Orchestrator",
    "TaskContext",
    "IntegrationReport",
    "UnitOutcome",
    # Configuration
    "OrchestratorConfig",
    "load_config",
    # Errors
    "TaskforgeError",
    "TaskSpecError",
    "ConfigError",
    "UnitTooLarge",
    "DependencyCycle",
    "InvalidUnitGraph",
    "DecompositionFailed",
    "ScoreUnavailable",
    "OwnershipConflict",
    "GateFailed",
    "GateExhausted",
    "GateOrderError",
    "MergeIncompatible",
    "WorkspaceStateError",
    "NoCapableExecutor",
]
