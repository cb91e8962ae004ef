# SPDX-License-Identifier: MIT
"""Consolidation of integrated units into one integration point.

Units are merged in an order consistent with the prerequisite DAG: a unit
merges only after every prerequisite has merged. Units housed in one
workspace (a shared branch or a dependency chain) merge together, once,
and only when every unit in that workspace is integrated. Units without a
workspace ran in the ambient context and need no merge.

A merge failure halts only the failing unit's dependents; independent
units still merge. No speculative reordering is attempted.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from taskforge.decompose import topological_order
from taskforge.errors import MergeIncompatible
from taskforge.units import WorkUnit
from taskforge.workspace import Workspace, WorkspaceManager, WorkspaceState, run_cmd

logger = logging.getLogger(__name__)


class Merger(Protocol):
    def merge(self, unit_ids: Sequence[str], workspace: Workspace) -> None: ...


class GitMerger:
    """Merges workspace branches into the checked-out integration branch."""

    def __init__(self, repo_root: Path | str, timeout: int = 120) -> None:
        self.repo_root = Path(repo_root)
        self.timeout = timeout
        self._git_lock = threading.Lock()

    def merge(self, unit_ids: Sequence[str], workspace: Workspace) -> None:
        label = "+".join(unit_ids)
        if not workspace.branch:
            raise MergeIncompatible(label, f"workspace {workspace.handle} has no branch")
        with self._git_lock:
            rc, out, err = run_cmd(
                ["git", "merge", "--no-ff", "--no-edit", workspace.branch],
                cwd=self.repo_root,
                timeout=self.timeout,
            )
            if rc == 0:
                return
            run_cmd(["git", "merge", "--abort"], cwd=self.repo_root, timeout=self.timeout)
        raise MergeIncompatible(label, (out + "\n" + err).strip() or f"git merge exited {rc}")


@dataclass
class ConsolidationReport:
    merge_order: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    blocked: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.blocked

    def to_dict(self) -> dict[str, Any]:
        return {
            "merge_order": list(self.merge_order),
            "failed": dict(self.failed),
            "blocked": dict(self.blocked),
        }


class ConsolidationCoordinator:
    """Merges integrated units in dependency order."""

    def __init__(self, merger: Merger | None = None, workspaces: WorkspaceManager | None = None) -> None:
        self.merger = merger
        self.workspaces = workspaces

    def consolidate(
        self,
        units: Sequence[WorkUnit],
        integrated: Collection[str],
        workspace_of: Mapping[str, Workspace | None],
        already_merged: Collection[str] = (),
    ) -> ConsolidationReport:
        """Merge every integrated unit whose prerequisites have merged.

        Args:
            units: All units of the task.
            integrated: Ids of units whose gate pipeline reached terminal-integrated.
            workspace_of: Workspace housing each unit; ``None`` for ambient execution.
            already_merged: Units merged by an earlier pass; they count as
                merged prerequisites and are not merged again.
        """
        report = ConsolidationReport()
        ordered = topological_order(units)
        by_id = {u.id: u for u in ordered}
        position = {u.id: i for i, u in enumerate(ordered)}
        merged: set[str] = set(already_merged)

        for unit in ordered:
            if unit.id in merged:
                continue
            workspace = workspace_of.get(unit.id)
            group = [unit.id]
            if workspace is not None:
                group = sorted((o for o in workspace.owners if o in by_id), key=position.__getitem__)
                # a workspace is handled once, at its last owner in DAG order
                if group[-1] != unit.id:
                    continue

            not_ready = [uid for uid in group if uid not in integrated]
            if not_ready:
                for uid in group:
                    if uid in integrated:
                        report.blocked[uid] = (
                            f"workspace {workspace.handle if workspace else '-'} also holds "
                            f"unintegrated unit(s): {', '.join(not_ready)}"
                        )
                continue

            members = set(group)
            missing = sorted(
                {dep for uid in group for dep in by_id[uid].depends_on if dep not in members and dep not in merged}
            )
            if missing:
                for uid in group:
                    report.blocked[uid] = f"prerequisite(s) not merged: {', '.join(missing)}"
                logger.warning("Merge of %s blocked on %s", ", ".join(group), ", ".join(missing))
                continue

            try:
                self._merge_group(group, workspace)
            except MergeIncompatible as exc:
                for uid in group:
                    report.failed[uid] = exc.reason
                logger.warning("Merge of %s failed: %s", ", ".join(group), exc.reason)
                continue

            merged.update(group)
            report.merge_order.extend(group)

        return report

    def _merge_group(self, group: list[str], workspace: Workspace | None) -> None:
        if workspace is None:
            logger.info("%s integrated in the ambient context", ", ".join(group))
            return
        if self.workspaces is not None and workspace.state is WorkspaceState.ACTIVE:
            self.workspaces.mark_verified(workspace)
        if self.merger is None:
            raise MergeIncompatible("+".join(group), "no merger configured")
        try:
            self.merger.merge(group, workspace)
        except MergeIncompatible:
            if self.workspaces is not None:
                self.workspaces.discard(workspace)
            raise
        if self.workspaces is not None:
            self.workspaces.mark_merged(workspace)
        logger.info("Merged %s from workspace %s", ", ".join(group), workspace.handle)
