# SPDX-License-Identifier: MIT
"""Unit tests for taskforge/config.py."""

from __future__ import annotations

from pathlib import Path

import pytest

from taskforge.config import DEFAULT_RETRY_BUDGETS, OrchestratorConfig, load_config, parse_config
from taskforge.errors import ConfigError

FULL_CONFIG = """\
strategy:
  direct_max_score: 8
  shared_branch_max_score: 25
  shared_branch_max_units: 3
size:
  max_files: 4
  max_lines: 300
gates:
  retry_budgets:
    security: 5
execution:
  max_workers: 2
  replan_budget: 1
workspace:
  root: worktrees
  branch_prefix: task/
  base_branches: [main]
"""


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        assert load_config(tmp_path / "absent.yaml") == OrchestratorConfig()

    def test_default_location(self, tmp_path: Path) -> None:
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        (config_dir / "taskforge.yaml").write_text("size:\n  max_files: 3\n", encoding="utf-8")
        assert load_config(project_root=tmp_path).size.max_files == 3

    def test_full_file(self, tmp_path: Path) -> None:
        path = tmp_path / "taskforge.yaml"
        path.write_text(FULL_CONFIG, encoding="utf-8")
        config = load_config(path)

        assert config.strategy.direct_max_score == 8
        assert config.strategy.shared_branch_max_units == 3
        assert config.size.max_lines == 300
        assert config.gates.budget_for("security") == 5
        assert config.gates.budget_for("authorization") == DEFAULT_RETRY_BUDGETS["authorization"]
        assert config.execution.max_workers == 2
        assert config.workspace.branch_prefix == "task/"
        assert config.workspace.base_branches == ("main",)

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "taskforge.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == OrchestratorConfig()

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "taskforge.yaml"
        path.write_text("strategy: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "taskforge.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_config(path)


class TestParseConfig:
    """Tests for value validation."""

    @pytest.mark.parametrize(
        "data, message",
        [
            ({"size": {"max_files": 0}}, "max_files must be >= 1"),
            ({"size": {"max_lines": True}}, "must be an integer"),
            ({"strategy": {"direct_max_score": "ten"}}, "must be an integer"),
            ({"strategy": {"direct_max_score": 20, "shared_branch_max_score": 10}}, ">= strategy.direct_max_score"),
            ({"gates": {"retry_budgets": {"lint": 2}}}, "Unknown gate"),
            ({"gates": {"retry_budgets": {"review": 0}}}, "review must be >= 1"),
            ({"execution": "fast"}, "execution must be a mapping"),
            ({"workspace": {"base_branches": "main"}}, "base_branches"),
        ],
    )
    def test_rejects_invalid_values(self, data, message) -> None:
        with pytest.raises(ConfigError, match=message):
            parse_config(data)

    def test_zero_replan_budget_allowed(self) -> None:
        assert parse_config({"execution": {"replan_budget": 0}}).execution.replan_budget == 0

    def test_config_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_config({"size": {"max_files": -1}})
