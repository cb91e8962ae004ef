# SPDX-License-Identifier: MIT
"""Workspace allocation and lifecycle.

A workspace is the execution context handed to executors:

- ``direct``: none; units run in the ambient context
- ``shared-branch``: one workspace shared by every unit of the group
- ``isolated-workspace``: one workspace per unit, or per dependency chain

Lifecycle: provisioned -> active -> verified -> merged, with discarded
reachable from any non-terminal state. Reclaim is only legal once merged
or discarded.

Backends create the physical context. :class:`GitWorktreeBackend` lays out
``trees/<unit-id>-<slug>`` worktrees on ``feature/<unit-id>-<slug>``
branches; :class:`DirectoryBackend` uses plain directories.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from taskforge.config import WorkspaceConfig
from taskforge.errors import WorkspaceStateError
from taskforge.strategy import Strategy
from taskforge.units import WorkUnit

logger = logging.getLogger(__name__)


class WorkspaceState(str, Enum):
    PROVISIONED = "provisioned"
    ACTIVE = "active"
    VERIFIED = "verified"
    MERGED = "merged"
    DISCARDED = "discarded"


_TRANSITIONS: dict[WorkspaceState, frozenset[WorkspaceState]] = {
    WorkspaceState.PROVISIONED: frozenset({WorkspaceState.ACTIVE, WorkspaceState.DISCARDED}),
    WorkspaceState.ACTIVE: frozenset({WorkspaceState.VERIFIED, WorkspaceState.DISCARDED}),
    WorkspaceState.VERIFIED: frozenset({WorkspaceState.MERGED, WorkspaceState.DISCARDED}),
    WorkspaceState.MERGED: frozenset(),
    WorkspaceState.DISCARDED: frozenset(),
}

RECLAIMABLE = frozenset({WorkspaceState.MERGED, WorkspaceState.DISCARDED})


def slugify(text: str, max_length: int = 40) -> str:
    """Lower-case ``text`` and keep only ``[a-z0-9-]``."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or "unit"


def workspace_name(unit_id: str, title: str) -> str:
    return f"{slugify(unit_id, max_length=60)}-{slugify(title)}"


@dataclass
class Workspace:
    handle: str
    path: Path
    owners: tuple[str, ...]
    strategy: Strategy
    branch: str | None = None
    state: WorkspaceState = WorkspaceState.PROVISIONED
    reclaimed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "handle": self.handle,
            "path": str(self.path),
            "branch": self.branch,
            "owners": list(self.owners),
            "strategy": self.strategy.value,
            "state": self.state.value,
            "reclaimed": self.reclaimed,
        }


class WorkspaceBackend(Protocol):
    def create(self, name: str, branch: str | None) -> Path: ...

    def remove(self, path: Path, branch: str | None) -> None: ...


class DirectoryBackend:
    """Workspaces as plain directories under ``root``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def create(self, name: str, branch: str | None) -> Path:
        path = self.root / name
        if path.exists():
            raise WorkspaceStateError(f"Workspace path already exists: {path}")
        path.mkdir(parents=True)
        return path

    def remove(self, path: Path, branch: str | None) -> None:
        if path.exists():
            shutil.rmtree(path)


def run_cmd(
    cmd: list[str],
    cwd: Path | str,
    env: dict[str, str] | None = None,
    timeout: int = 60,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd),
            env=env or os.environ.copy(),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, "", "Command timed out"
    except OSError as e:
        return -1, "", str(e)


class GitWorktreeBackend:
    """Workspaces as ``git worktree`` checkouts on their own branches.

    Creation refuses to reuse an existing path or branch; stale state from
    an earlier run must be cleaned up explicitly. Removal deletes the
    workspace branch too, so a discarded unit can be re-provisioned.
    """

    def __init__(
        self,
        repo_root: Path | str,
        root: str = "trees",
        base_branches: Sequence[str] = ("develop", "main", "master"),
        timeout: int = 60,
    ) -> None:
        self.repo_root = Path(repo_root)
        self.root = self.repo_root / root
        self.base_branches = tuple(base_branches)
        self.timeout = timeout
        self._git_lock = threading.Lock()

    def _git(self, *args: str) -> tuple[int, str, str]:
        return run_cmd(["git", *args], cwd=self.repo_root, timeout=self.timeout)

    def branch_exists(self, branch: str) -> bool:
        rc, _, _ = self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        return rc == 0

    def base_branch(self) -> str:
        """First configured base branch that exists locally."""
        for candidate in self.base_branches:
            if self.branch_exists(candidate):
                return candidate
        raise WorkspaceStateError(
            f"None of the base branches exist in {self.repo_root}: {', '.join(self.base_branches)}"
        )

    def create(self, name: str, branch: str | None) -> Path:
        path = self.root / name
        branch = branch or name
        with self._git_lock:
            if path.exists():
                raise WorkspaceStateError(f"Worktree path already exists: {path}")
            if self.branch_exists(branch):
                raise WorkspaceStateError(f"Branch already exists: {branch}")
            base = self.base_branch()
            self.root.mkdir(parents=True, exist_ok=True)
            rc, out, err = self._git("worktree", "add", "-b", branch, str(path), base)
            if rc != 0:
                raise WorkspaceStateError(f"git worktree add failed for {name}: {(out + err).strip()}")
        logger.debug("Created worktree %s on %s from %s", path, branch, base)
        return path

    def remove(self, path: Path, branch: str | None) -> None:
        """Remove the worktree at ``path`` and delete its branch.

        Base branches are never deleted.
        """
        with self._git_lock:
            rc, out, err = self._git("worktree", "remove", "--force", str(path))
            if rc != 0 and path.exists():
                raise WorkspaceStateError(f"git worktree remove failed for {path}: {(out + err).strip()}")
            self._git("worktree", "prune")
            if not branch or branch in self.base_branches or not self.branch_exists(branch):
                return
            rc, out, err = self._git("branch", "-D", branch)
            if rc != 0:
                raise WorkspaceStateError(f"git branch -D failed for {branch}: {(out + err).strip()}")
        logger.debug("Removed worktree %s and branch %s", path, branch)


def dependency_chains(units: Sequence[WorkUnit]) -> list[list[WorkUnit]]:
    """Split ``units`` into weakly connected components of the prerequisite graph.

    Each chain keeps the input order of its members.
    """
    ids = {u.id for u in units}
    parent = {u.id: u.id for u in units}

    def find(x: str) -> str:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for unit in units:
        for dep in unit.depends_on:
            if dep in ids:
                parent[find(unit.id)] = find(dep)

    chains: dict[str, list[WorkUnit]] = {}
    for unit in units:
        chains.setdefault(find(unit.id), []).append(unit)
    return list(chains.values())


class WorkspaceManager:
    """Provisions workspaces per strategy and enforces their lifecycle."""

    def __init__(self, backend: WorkspaceBackend, config: WorkspaceConfig | None = None) -> None:
        self.backend = backend
        self.config = config or WorkspaceConfig()
        self._lock = threading.Lock()
        self._by_handle: dict[str, Workspace] = {}
        self._by_unit: dict[str, Workspace] = {}

    @property
    def workspaces(self) -> list[Workspace]:
        with self._lock:
            return list(self._by_handle.values())

    def workspace_for(self, unit_id: str) -> Workspace | None:
        with self._lock:
            return self._by_unit.get(unit_id)

    def provision(
        self,
        strategy: Strategy,
        units: Sequence[WorkUnit],
        *,
        per_chain: bool = False,
        label: str | None = None,
    ) -> list[Workspace]:
        """Allocate the workspaces ``strategy`` calls for.

        Args:
            strategy: The selected execution strategy.
            units: Units to house.
            per_chain: Under ``isolated-workspace``, allocate one workspace per
                dependency chain instead of one per unit.
            label: Name for the shared workspace under ``shared-branch``.
        """
        if strategy is Strategy.DIRECT or not units:
            return []
        if strategy is Strategy.SHARED_BRANCH:
            name = f"shared-{slugify(label or units[0].id)}"
            return [self._create(name, tuple(u.id for u in units), strategy)]
        if per_chain:
            return [
                self._create(workspace_name(chain[0].id, chain[0].title), tuple(u.id for u in chain), strategy)
                for chain in dependency_chains(units)
            ]
        return [self.provision_isolated(unit) for unit in units]

    def provision_isolated(self, unit: WorkUnit) -> Workspace:
        return self._create(workspace_name(unit.id, unit.title), (unit.id,), Strategy.ISOLATED_WORKSPACE)

    def _create(self, name: str, owners: tuple[str, ...], strategy: Strategy) -> Workspace:
        branch = f"{self.config.branch_prefix}{name}"
        with self._lock:
            if name in self._by_handle:
                raise WorkspaceStateError(f"Workspace {name} is already provisioned")
            taken = [uid for uid in owners if uid in self._by_unit and not self._by_unit[uid].reclaimed
                     and self._by_unit[uid].state not in RECLAIMABLE]
            if taken:
                raise WorkspaceStateError(f"Unit(s) already housed in a live workspace: {', '.join(taken)}")
        path = self.backend.create(name, branch)
        workspace = Workspace(handle=name, path=path, owners=owners, strategy=strategy, branch=branch)
        with self._lock:
            self._by_handle[name] = workspace
            for uid in owners:
                self._by_unit[uid] = workspace
        logger.info("Provisioned %s workspace %s for %s", strategy.value, name, ", ".join(owners))
        return workspace

    def _transition(self, workspace: Workspace, target: WorkspaceState) -> None:
        with self._lock:
            if workspace.state is target:
                return
            if target not in _TRANSITIONS[workspace.state]:
                raise WorkspaceStateError(
                    f"Illegal workspace transition {workspace.state.value} -> {target.value} for {workspace.handle}"
                )
            workspace.state = target
        logger.info("Workspace %s is now %s", workspace.handle, target.value)

    def activate(self, workspace: Workspace) -> None:
        self._transition(workspace, WorkspaceState.ACTIVE)

    def mark_verified(self, workspace: Workspace) -> None:
        self._transition(workspace, WorkspaceState.VERIFIED)

    def mark_merged(self, workspace: Workspace) -> None:
        self._transition(workspace, WorkspaceState.MERGED)

    def discard(self, workspace: Workspace) -> None:
        self._transition(workspace, WorkspaceState.DISCARDED)

    def reclaim(self, workspace: Workspace) -> None:
        """Destroy a merged or discarded workspace.

        Raises:
            WorkspaceStateError: If the workspace is provisioned, active or verified.
        """
        if workspace.state not in RECLAIMABLE:
            raise WorkspaceStateError(
                f"Cannot reclaim workspace {workspace.handle} in state {workspace.state.value}"
            )
        if workspace.reclaimed:
            return
        self.backend.remove(workspace.path, workspace.branch)
        with self._lock:
            workspace.reclaimed = True
            self._by_handle.pop(workspace.handle, None)
            for uid in workspace.owners:
                if self._by_unit.get(uid) is workspace:
                    del self._by_unit[uid]
        logger.info("Reclaimed workspace %s", workspace.handle)

    def reclaim_finished(self) -> list[Workspace]:
        """Reclaim every merged or discarded workspace; return those reclaimed."""
        done = [ws for ws in self.workspaces if ws.state in RECLAIMABLE and not ws.reclaimed]
        for workspace in done:
            self.reclaim(workspace)
        return done
