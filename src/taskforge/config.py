# SPDX-License-Identifier: MIT
"""Orchestrator configuration loader.

Loads ``config/taskforge.yaml`` into frozen dataclasses. A missing file
yields the defaults; any present value is validated and an invalid one
raises :class:`ConfigError`.

Example ``taskforge.yaml``::

    strategy:
      direct_max_score: 10
      shared_branch_max_score: 30
      shared_branch_max_units: 5
    size:
      max_files: 5
      max_lines: 500
    gates:
      retry_budgets:
        build-test: 3
        authorization: 1
    execution:
      max_workers: 4
      replan_budget: 2
    workspace:
      root: trees
      branch_prefix: feature/
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from taskforge.errors import ConfigError

DEFAULT_CONFIG_PATH = Path("config/taskforge.yaml")

GATE_NAMES: tuple[str, ...] = ("build-test", "review", "security", "authorization", "integrate")

DEFAULT_RETRY_BUDGETS: dict[str, int] = {
    "build-test": 3,
    "review": 3,
    "security": 3,
    "authorization": 1,
    "integrate": 2,
}


@dataclass(frozen=True)
class StrategyThresholds:
    direct_max_score: int = 10
    shared_branch_max_score: int = 30
    shared_branch_max_units: int = 5


@dataclass(frozen=True)
class SizeLimits:
    """Upper bounds a unit must respect before it can be scheduled."""

    max_files: int = 5
    max_lines: int = 500


@dataclass(frozen=True)
class GateConfig:
    retry_budgets: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_RETRY_BUDGETS))

    def budget_for(self, gate_name: str) -> int:
        return self.retry_budgets.get(gate_name, DEFAULT_RETRY_BUDGETS[gate_name])


@dataclass(frozen=True)
class ExecutionConfig:
    max_workers: int = 4
    replan_budget: int = 2
    decomposition_attempts: int = 3


@dataclass(frozen=True)
class WorkspaceConfig:
    root: str = "trees"
    branch_prefix: str = "feature/"
    base_branches: tuple[str, ...] = ("develop", "main", "master")


@dataclass(frozen=True)
class OrchestratorConfig:
    strategy: StrategyThresholds = field(default_factory=StrategyThresholds)
    size: SizeLimits = field(default_factory=SizeLimits)
    gates: GateConfig = field(default_factory=GateConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)


def load_config(
    config_path: Path | None = None,
    project_root: Path | None = None,
) -> OrchestratorConfig:
    """Load orchestrator configuration from a YAML file.

    Args:
        config_path: Path to the config file. Defaults to config/taskforge.yaml.
        project_root: Project root directory. Defaults to current working directory.

    Raises:
        ConfigError: If the file is not valid YAML or holds invalid values.
    """
    root = project_root or Path.cwd()
    path = config_path or (root / DEFAULT_CONFIG_PATH)

    if not path.exists():
        return OrchestratorConfig()

    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return OrchestratorConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"Config must be a mapping, got {type(data).__name__}")

    return parse_config(data)


def parse_config(data: dict[str, Any]) -> OrchestratorConfig:
    """Parse configuration from an already-loaded mapping."""
    strategy_data = _section(data, "strategy")
    strategy = StrategyThresholds(
        direct_max_score=_int(strategy_data, "direct_max_score", 10, minimum=0),
        shared_branch_max_score=_int(strategy_data, "shared_branch_max_score", 30, minimum=0),
        shared_branch_max_units=_int(strategy_data, "shared_branch_max_units", 5, minimum=1),
    )
    if strategy.shared_branch_max_score < strategy.direct_max_score:
        raise ConfigError("strategy.shared_branch_max_score must be >= strategy.direct_max_score")

    size_data = _section(data, "size")
    size = SizeLimits(
        max_files=_int(size_data, "max_files", 5, minimum=1),
        max_lines=_int(size_data, "max_lines", 500, minimum=1),
    )

    gates_data = _section(data, "gates")
    budgets_data = gates_data.get("retry_budgets", {}) or {}
    if not isinstance(budgets_data, dict):
        raise ConfigError("gates.retry_budgets must be a mapping")
    unknown = sorted(set(budgets_data) - set(GATE_NAMES))
    if unknown:
        raise ConfigError(f"Unknown gate(s) in gates.retry_budgets: {', '.join(unknown)}")
    budgets = dict(DEFAULT_RETRY_BUDGETS)
    for name in budgets_data:
        budgets[name] = _int(budgets_data, name, DEFAULT_RETRY_BUDGETS[name], minimum=1)

    exec_data = _section(data, "execution")
    execution = ExecutionConfig(
        max_workers=_int(exec_data, "max_workers", 4, minimum=1),
        replan_budget=_int(exec_data, "replan_budget", 2, minimum=0),
        decomposition_attempts=_int(exec_data, "decomposition_attempts", 3, minimum=1),
    )

    ws_data = _section(data, "workspace")
    base_branches = ws_data.get("base_branches", ["develop", "main", "master"])
    if not isinstance(base_branches, list) or not all(isinstance(b, str) and b for b in base_branches):
        raise ConfigError("workspace.base_branches must be a list of branch names")
    workspace = WorkspaceConfig(
        root=str(ws_data.get("root", "trees")),
        branch_prefix=str(ws_data.get("branch_prefix", "feature/")),
        base_branches=tuple(base_branches),
    )

    return OrchestratorConfig(
        strategy=strategy,
        size=size,
        gates=GateConfig(retry_budgets=budgets),
        execution=execution,
        workspace=workspace,
    )


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping, got {type(value).__name__}")
    return value


def _int(data: dict[str, Any], key: str, default: int, *, minimum: int) -> int:
    value = data.get(key, default)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value
