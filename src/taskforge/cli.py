# SPDX-License-Identifier: MIT
"""taskforge CLI: planning and validation of task documents.

Commands:
    plan: Decompose, score and select a strategy for a task document.
    check: Validate a task document and its unit graph without planning.
    schema: Print the JSON schema for task documents.

Execution itself needs executors and verifiers and is driven through
:class:`taskforge.orchestrator.Orchestrator`.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from taskforge import __version__
from taskforge.atomic_io import AtomicWriteError, atomic_write_json
from taskforge.config import load_config
from taskforge.conflicts import detect_units
from taskforge.decompose import Decomposer
from taskforge.errors import ConfigError, DecompositionFailed, TaskSpecError
from taskforge.scoring import score_units
from taskforge.strategy import StrategySelector
from taskforge.units import TaskSpec, get_json_schema, load_task, read_task_document, validate_strict

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the taskforge CLI."""
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument("task", type=Path, help="Task document (.yaml, .yml or .json)")
    shared.add_argument("--config", type=Path, default=None, help="Path to taskforge.yaml")
    shared.add_argument("--strict", action="store_true", help="Validate against the JSON schema first")
    shared.add_argument("--json", action="store_true", help="Emit JSON instead of text")

    parser = argparse.ArgumentParser(
        prog="taskforge",
        description="Plan multi-agent work: decomposition, scoring and strategy selection",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    plan_cmd = subparsers.add_parser("plan", help="Decompose, score and select a strategy", parents=[shared])
    plan_cmd.add_argument("--out", type=Path, default=None, help="Also write the plan as JSON to this path")

    subparsers.add_parser("check", help="Validate a task document and its unit graph", parents=[shared])
    subparsers.add_parser("schema", help="Print the task document JSON schema")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns:
        0 on success, 2 when the task document or its units are invalid,
        1 on any other error.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.WARNING
    if args.verbose >= 1:
        log_level = logging.INFO
    if args.verbose >= 2:
        log_level = logging.DEBUG
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    try:
        if args.command == "schema":
            _emit_json(get_json_schema())
            return 0
        if args.command == "check":
            return _cmd_check(args)
        if args.command == "plan":
            return _cmd_plan(args)
        parser.error(f"Unknown command: {args.command}")
        return 2
    except (TaskSpecError, ConfigError, ValidationError) as e:
        logger.error("%s", e)
        return 2
    except (OSError, ValueError, AtomicWriteError) as e:
        logger.error("Error: %s", e)
        return 1


def _load(args: argparse.Namespace) -> TaskSpec:
    data = read_task_document(args.task)
    return validate_strict(data) if args.strict else load_task(data)


def _cmd_check(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    task = _load(args)
    problems = [str(p) for p in Decomposer(config.size).validate(list(task.units))]
    if not task.units:
        problems.append(f"Task {task.id} declares no work units")

    if args.json:
        _emit_json({"task_id": task.id, "ok": not problems, "problems": problems})
    elif problems:
        for line in problems:
            sys.stdout.write(f"FAIL {line}\n")
    else:
        sys.stdout.write(f"OK {task.id}: {len(task.units)} unit(s)\n")
    return 2 if problems else 0


def _cmd_plan(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    task = _load(args)
    try:
        units = Decomposer(config.size).plan_units(task)
    except DecompositionFailed as e:
        logger.error("%s", e)
        for cause in e.causes:
            logger.error("  %s", cause)
        return 2

    scores, unavailable = score_units(units)
    schedulable = [u for u in units if u.id in scores]
    conflicts = detect_units(schedulable)
    decision = StrategySelector(config.strategy).select(schedulable, scores, conflicts)

    payload: dict[str, Any] = {
        "task_id": task.id,
        "title": task.title,
        "strategy": decision.to_dict(),
        "order": [u.id for u in units],
        "units": [
            {
                "id": u.id,
                "title": u.title,
                "depends_on": list(u.depends_on),
                "score": scores[u.id].to_dict() if u.id in scores else None,
            }
            for u in units
        ],
        "unavailable": {uid: str(exc) for uid, exc in unavailable.items()},
        "conflicts": [c.to_dict() for c in conflicts],
    }
    if args.out:
        atomic_write_json(args.out, payload)

    if args.json:
        _emit_json(payload)
    else:
        sys.stdout.write(f"Task {task.id}: {task.title}\n")
        sys.stdout.write(f"Strategy: {decision.strategy.value}\n")
        sys.stdout.write(f"Rationale: {decision.rationale}\n")
        for unit in units:
            total = scores[unit.id].total if unit.id in scores else "unavailable"
            deps = ", ".join(unit.depends_on) or "-"
            sys.stdout.write(f"  {unit.id}  score={total}  after={deps}  {unit.title}\n")
        for uid, exc in unavailable.items():
            sys.stdout.write(f"  ! {uid}: {exc}\n")
    return 0


def _emit_json(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")


if __name__ == "__main__":
    sys.exit(main())
