# SPDX-License-Identifier: MIT
"""Unit tests for taskforge/workspace.py.

Covers:
- Naming: slugs and ``<unit-id>-<slug>`` workspace names
- Provisioning per strategy (direct, shared-branch, isolated, per chain)
- Lifecycle transitions and reclaim rules
- Git worktree backend (skipped when git is unavailable)
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from taskforge.config import WorkspaceConfig
from taskforge.errors import WorkspaceStateError
from taskforge.strategy import Strategy
from taskforge.workspace import (
    DirectoryBackend,
    GitWorktreeBackend,
    WorkspaceManager,
    WorkspaceState,
    dependency_chains,
    slugify,
    workspace_name,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


# -----------------------------------------------------------------------------
# Naming
# -----------------------------------------------------------------------------


class TestNaming:
    """Tests for slugify and workspace_name."""

    def test_slugify(self) -> None:
        assert slugify("Add Login API!") == "add-login-api"
        assert slugify("  --  ") == "unit"
        assert len(slugify("x" * 100)) == 40

    def test_workspace_name(self) -> None:
        assert workspace_name("U1", "Add login form") == "u1-add-login-form"
        assert workspace_name("#42", "Fix: crash") == "42-fix-crash"


# -----------------------------------------------------------------------------
# Provisioning
# -----------------------------------------------------------------------------


class TestProvision:
    """Tests for WorkspaceManager.provision."""

    def test_direct_needs_no_workspace(self, directory_workspaces, make_unit) -> None:
        assert directory_workspaces.provision(Strategy.DIRECT, [make_unit("U1")]) == []

    def test_shared_branch(self, directory_workspaces, make_unit) -> None:
        units = [make_unit("U1"), make_unit("U2")]
        (workspace,) = directory_workspaces.provision(Strategy.SHARED_BRANCH, units, label="TASK-1")
        assert workspace.handle == "shared-task-1"
        assert workspace.branch == "feature/shared-task-1"
        assert workspace.owners == ("U1", "U2")
        assert workspace.path.is_dir()
        assert directory_workspaces.workspace_for("U2") is workspace

    def test_isolated_one_per_unit(self, directory_workspaces, make_unit) -> None:
        units = [make_unit("U1", title="Model"), make_unit("U2", title="View")]
        workspaces = directory_workspaces.provision(Strategy.ISOLATED_WORKSPACE, units)
        assert [ws.handle for ws in workspaces] == ["u1-model", "u2-view"]
        assert all(ws.state is WorkspaceState.PROVISIONED for ws in workspaces)

    def test_isolated_per_chain(self, directory_workspaces, make_unit) -> None:
        units = [make_unit("A"), make_unit("B", depends_on=["A"]), make_unit("C")]
        workspaces = directory_workspaces.provision(Strategy.ISOLATED_WORKSPACE, units, per_chain=True)
        assert [ws.owners for ws in workspaces] == [("A", "B"), ("C",)]

    def test_refuses_unit_in_live_workspace(self, directory_workspaces, make_unit) -> None:
        unit = make_unit("U1")
        directory_workspaces.provision_isolated(unit)
        with pytest.raises(WorkspaceStateError):
            directory_workspaces.provision_isolated(unit)

    def test_custom_branch_prefix(self, tmp_path: Path, make_unit) -> None:
        manager = WorkspaceManager(DirectoryBackend(tmp_path), WorkspaceConfig(branch_prefix="wip/"))
        assert manager.provision_isolated(make_unit("U1", title="x")).branch == "wip/u1-x"

    def test_directory_backend_refuses_existing_path(self, tmp_path: Path) -> None:
        (tmp_path / "taken").mkdir()
        with pytest.raises(WorkspaceStateError, match="already exists"):
            DirectoryBackend(tmp_path).create("taken", None)

    def test_dependency_chains(self, make_unit) -> None:
        units = [make_unit("A"), make_unit("X"), make_unit("B", depends_on=["A"]), make_unit("C", depends_on=["B"])]
        assert [[u.id for u in chain] for chain in dependency_chains(units)] == [["A", "B", "C"], ["X"]]


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------


class TestLifecycle:
    """Tests for lifecycle transitions and reclaim."""

    def test_full_lifecycle(self, directory_workspaces, make_unit) -> None:
        workspace = directory_workspaces.provision_isolated(make_unit("U1"))
        directory_workspaces.activate(workspace)
        directory_workspaces.mark_verified(workspace)
        directory_workspaces.mark_merged(workspace)
        directory_workspaces.reclaim(workspace)

        assert workspace.reclaimed
        assert not workspace.path.exists()
        assert directory_workspaces.workspace_for("U1") is None
        assert directory_workspaces.workspaces == []

    def test_illegal_transition(self, directory_workspaces, make_unit) -> None:
        workspace = directory_workspaces.provision_isolated(make_unit("U1"))
        with pytest.raises(WorkspaceStateError, match="provisioned -> merged"):
            directory_workspaces.mark_merged(workspace)

    def test_reclaim_requires_terminal_state(self, directory_workspaces, make_unit) -> None:
        workspace = directory_workspaces.provision_isolated(make_unit("U1"))
        directory_workspaces.activate(workspace)
        with pytest.raises(WorkspaceStateError, match="Cannot reclaim"):
            directory_workspaces.reclaim(workspace)
        assert workspace.path.exists()

    def test_discard_then_reprovision(self, directory_workspaces, make_unit) -> None:
        unit = make_unit("U1")
        first = directory_workspaces.provision_isolated(unit)
        directory_workspaces.activate(first)
        directory_workspaces.discard(first)
        directory_workspaces.reclaim(first)
        second = directory_workspaces.provision_isolated(unit)
        assert second.handle == first.handle
        assert second.state is WorkspaceState.PROVISIONED

    def test_discarded_is_final(self, directory_workspaces, make_unit) -> None:
        workspace = directory_workspaces.provision_isolated(make_unit("U1"))
        directory_workspaces.discard(workspace)
        with pytest.raises(WorkspaceStateError):
            directory_workspaces.activate(workspace)

    def test_reclaim_finished(self, directory_workspaces, make_unit) -> None:
        done = directory_workspaces.provision_isolated(make_unit("U1"))
        live = directory_workspaces.provision_isolated(make_unit("U2"))
        directory_workspaces.discard(done)
        assert directory_workspaces.reclaim_finished() == [done]
        assert directory_workspaces.workspaces == [live]

    def test_to_dict(self, directory_workspaces, make_unit) -> None:
        data = directory_workspaces.provision_isolated(make_unit("U1", title="a")).to_dict()
        assert data["state"] == "provisioned"
        assert data["strategy"] == "isolated-workspace"
        assert data["owners"] == ["U1"]


# -----------------------------------------------------------------------------
# Git worktrees
# -----------------------------------------------------------------------------


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)


@requires_git
class TestGitWorktreeBackend:
    """Tests for GitWorktreeBackend against a scratch repository."""

    def test_create_and_remove(self, git_repo: Path) -> None:
        backend = GitWorktreeBackend(git_repo)
        assert backend.base_branch() == "main"
        path = backend.create("u1-login", "feature/u1-login")
        assert path == git_repo / "trees" / "u1-login"
        assert (path / "README.md").exists()
        assert backend.branch_exists("feature/u1-login")

        backend.remove(path, "feature/u1-login")
        assert not path.exists()
        assert not backend.branch_exists("feature/u1-login")

    def test_recreate_after_remove(self, git_repo: Path) -> None:
        backend = GitWorktreeBackend(git_repo)
        path = backend.create("u2-view", "feature/u2-view")
        backend.remove(path, "feature/u2-view")
        assert backend.create("u2-view", "feature/u2-view") == path

    def test_remove_keeps_base_branch(self, git_repo: Path) -> None:
        backend = GitWorktreeBackend(git_repo)
        path = backend.create("u1-login", "feature/u1-login")
        backend.remove(path, "main")
        assert backend.branch_exists("main")

    def test_discarded_unit_is_reprovisioned(self, git_repo: Path, make_unit) -> None:
        manager = WorkspaceManager(GitWorktreeBackend(git_repo))
        unit = make_unit("U2", title="View")
        first = manager.provision_isolated(unit)
        manager.activate(first)
        manager.discard(first)
        manager.reclaim(first)
        second = manager.provision_isolated(unit)
        assert second.branch == first.branch == "feature/u2-view"
        assert second.path.is_dir()

    def test_refuses_existing_branch(self, git_repo: Path) -> None:
        _git(git_repo, "branch", "feature/u1-login")
        with pytest.raises(WorkspaceStateError, match="Branch already exists"):
            GitWorktreeBackend(git_repo).create("u1-login", "feature/u1-login")

    def test_missing_base_branch(self, git_repo: Path) -> None:
        with pytest.raises(WorkspaceStateError, match="base branches"):
            GitWorktreeBackend(git_repo, base_branches=("develop",)).base_branch()

    def test_manager_lays_out_trees(self, git_repo: Path, make_unit) -> None:
        manager = WorkspaceManager(GitWorktreeBackend(git_repo))
        workspace = manager.provision_isolated(make_unit("U7", title="Add search"))
        assert workspace.path == git_repo / "trees" / "u7-add-search"
        assert workspace.branch == "feature/u7-add-search"
