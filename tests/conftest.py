# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for the test suite.

This module provides:
- Deterministic test environment setup
- Work unit and task builders
- Fake collaborators: executor, gate verifiers, authorizer, merger
"""
from __future__ import annotations

import os
import subprocess
import threading
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TESTS_DIR = Path(__file__).resolve().parent
ROOT_DIR = TESTS_DIR.parent
FIXED_TIME = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism.

    Sets environment variables to ensure reproducible test execution.
    """
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Path to the project root directory."""
    return ROOT_DIR


@pytest.fixture
def fixed_clock():
    """Clock returning a constant timestamp."""
    return lambda: FIXED_TIME


# ---------------------------------------------------------------------------
# Fixtures: Builders
# ---------------------------------------------------------------------------


@pytest.fixture
def make_unit():
    """Build a WorkUnit from short-hand arguments.

    Usage:
        unit = make_unit("U1", files=["src/a.py"], depends_on=["U0"])

    ``files`` entries may be paths (scored as small edits) or FileChange dicts.
    """
    from taskforge.units import WorkUnit

    def _make(
        uid: str,
        files: Sequence[str | dict[str, Any]] = (),
        *,
        title: str | None = None,
        depends_on: Sequence[str] = (),
        **fields: Any,
    ) -> WorkUnit:
        changes = [{"path": f, "change": "small"} if isinstance(f, str) else f for f in files]
        data: dict[str, Any] = {
            "id": uid,
            "title": title or f"Unit {uid}",
            "files": changes,
            "depends_on": list(depends_on),
        }
        data.update(fields)
        return WorkUnit.model_validate(data)

    return _make


@pytest.fixture
def make_task():
    """Build a TaskSpec from a list of WorkUnits."""
    from taskforge.units import TaskSpec

    def _make(units: Sequence[Any], task_id: str = "TASK-1", **fields: Any) -> TaskSpec:
        return TaskSpec(id=task_id, title=fields.pop("title", "Test task"), units=tuple(units), **fields)

    return _make


# ---------------------------------------------------------------------------
# Fixtures: Fake Collaborators
# ---------------------------------------------------------------------------


class FakeExecutor:
    """Executor that reports touched files without writing anything.

    Args:
        touched: Paths reported per unit id; defaults to the unit's declared paths.
        incomplete: Unit ids that report ``completed=False``.
        touched_once: Paths reported only on a unit's first execution.
    """

    def __init__(
        self,
        *,
        touched: dict[str, list[str]] | None = None,
        incomplete: set[str] | None = None,
        touched_once: dict[str, list[str]] | None = None,
    ) -> None:
        self.touched = touched or {}
        self.incomplete = incomplete or set()
        self.touched_once = dict(touched_once or {})
        self.calls: list[tuple[str, str | None]] = []
        self.remediations: list[tuple[str, list[str]]] = []
        self._lock = threading.Lock()

    def execute(self, unit, workspace, context):
        from taskforge.orchestrator import ExecutionResult

        with self._lock:
            self.calls.append((unit.id, workspace.handle if workspace is not None else None))
            extra = self.touched_once.pop(unit.id, [])
        paths = list(self.touched.get(unit.id, unit.paths)) + extra
        return ExecutionResult(
            modified_paths=tuple(paths),
            completed=unit.id not in self.incomplete,
            summary=f"{unit.id} done",
        )

    def remediate(self, unit, workspace, issues, context) -> None:
        with self._lock:
            self.remediations.append((unit.id, [i.text for i in issues]))

    def executed(self) -> list[str]:
        return [uid for uid, _ in self.calls]


class ScriptedVerifier:
    """Verifier that fails listed attempts per unit, then passes.

    Args:
        failures: unit id -> list of issue lists, one per failing attempt.
    """

    def __init__(self, failures: dict[str, list[list[str]]] | None = None) -> None:
        self.failures = {uid: list(attempts) for uid, attempts in (failures or {}).items()}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def verify(self, unit, workspace, context):
        from taskforge.gates import VerifierResult

        with self._lock:
            self.calls.append(unit.id)
            pending = self.failures.get(unit.id)
            issues = pending.pop(0) if pending else None
        if issues is None:
            return VerifierResult.passed()
        return VerifierResult.failed(*issues)


class RecordingMerger:
    """Merger that records merge calls and fails for selected units."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.merged: list[tuple[str, ...]] = []

    def merge(self, unit_ids, workspace) -> None:
        from taskforge.errors import MergeIncompatible

        bad = [uid for uid in unit_ids if uid in self.fail_for]
        if bad:
            raise MergeIncompatible(bad[0], "structural incompatibility in api.py")
        self.merged.append(tuple(unit_ids))


@pytest.fixture
def fake_executor():
    """Factory for :class:`FakeExecutor`."""
    return FakeExecutor


@pytest.fixture
def make_verifiers():
    """Build one ScriptedVerifier per verified gate.

    Usage:
        verifiers = make_verifiers(security={"U1": [["hardcoded secret"]]})
    """
    from taskforge.gates import Gate

    def _make(**failures: dict[str, list[list[str]]]) -> dict[Any, ScriptedVerifier]:
        return {
            Gate.BUILD_TEST: ScriptedVerifier(failures.get("build_test")),
            Gate.REVIEW: ScriptedVerifier(failures.get("review")),
            Gate.SECURITY: ScriptedVerifier(failures.get("security")),
            Gate.INTEGRATE: ScriptedVerifier(failures.get("integrate")),
        }

    return _make


@pytest.fixture
def approve_all():
    """Authorizer that always signals go."""
    from taskforge.gates import AuthorizationSignal

    return lambda unit, history: AuthorizationSignal(go=True, actor="reviewer")


@pytest.fixture
def recording_merger():
    """Factory for :class:`RecordingMerger`."""
    return RecordingMerger


@pytest.fixture
def directory_workspaces(tmp_path: Path):
    """WorkspaceManager backed by plain directories under tmp_path."""
    from taskforge.workspace import DirectoryBackend, WorkspaceManager

    return WorkspaceManager(DirectoryBackend(tmp_path / "trees"))


# ---------------------------------------------------------------------------
# Fixtures: Git
# ---------------------------------------------------------------------------


@pytest.fixture
def git_repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """An initialized repository on ``main`` with one commit."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for key, value in {
        "GIT_AUTHOR_NAME": "Test",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    }.items():
        monkeypatch.setenv(key, value)
    repo = tmp_path / "repo"
    repo.mkdir()

    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)

    git("init", "-q")
    git("symbolic-ref", "HEAD", "refs/heads/main")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    git("add", "README.md")
    git("commit", "-q", "-m", "init")
    return repo
