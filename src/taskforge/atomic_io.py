# SPDX-License-Identifier: MIT
"""Atomic report writes.

Reports are written to a sibling ``.tmp`` file, flushed and fsynced, then
renamed over the target, so a reader never sees a partial or empty report.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from taskforge.errors import TaskforgeError


class AtomicWriteError(TaskforgeError):
    """Raised when an atomic write fails."""


def atomic_write_text(path: Path | str, content: str, encoding: str = "utf-8") -> None:
    """Write ``content`` to ``path`` atomically.

    Raises:
        AtomicWriteError: If the temp file cannot be written or renamed.
    """
    path = Path(path)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise AtomicWriteError(f"Failed to write {path}: {e}") from e


def atomic_write_json(path: Path | str, data: dict[str, Any] | list[Any], indent: int = 2) -> None:
    """Serialize ``data`` first, then write it atomically.

    Raises:
        AtomicWriteError: If ``data`` is not JSON-serializable or the write fails.
    """
    try:
        content = json.dumps(data, indent=indent, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise AtomicWriteError(f"Failed to serialize JSON for {path}: {e}") from e
    atomic_write_text(path, content + "\n")
