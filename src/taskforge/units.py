# SPDX-License-Identifier: MIT
"""Work unit model and task document loading.

This module provides:
- Pydantic models for tasks and the work units they decompose into
- Loading of task documents from YAML or JSON
- Strict validation against the exported JSON schema (jsonschema, Draft 2020-12)

A work unit is immutable once created. Scores and workspace handles are
recorded next to the unit by the orchestrator rather than written into it.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Literal

import yaml
from jsonschema import Draft202012Validator
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from taskforge.errors import TaskSpecError

ChangeKind = Literal["new", "small", "medium", "large"]
OwnershipMode = Literal["exclusive"]

UNIT_ID_PATTERN = r"^[A-Za-z0-9#][A-Za-z0-9._#-]*$"


def normalize_path(path: str) -> str:
    """Normalize a repository-relative path or pattern.

    Converts backslashes and strips leading ``./`` and trailing slashes, so
    the same file always yields the same claim key.
    """
    path = path.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    while "//" in path:
        path = path.replace("//", "/")
    return path.rstrip("/") if path != "/" else path


class _UnitBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class FileChange(_UnitBase):
    """A file a unit will create or edit."""

    path: str = Field(..., min_length=1)
    change: ChangeKind = Field("medium", description="new | small | medium | large")
    core: bool = Field(False, description="Core or high-risk file")

    @field_validator("path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        normalized = normalize_path(value)
        if not normalized:
            raise ValueError(f"empty path after normalization: {value!r}")
        return normalized


class SizeEstimate(_UnitBase):
    estimated_files: int | None = Field(default=None, ge=0)
    estimated_lines: int = Field(0, ge=0)
    estimated_minutes: int | None = Field(default=None, ge=0)


class ComplexityFlags(_UnitBase):
    """Counting inputs for the complexity scorer."""

    # dependency
    external_integrations: int = Field(0, ge=0)
    schema_changes: int = Field(0, ge=0)
    third_party_upgrades: int = Field(0, ge=0)
    cross_module_deps: int = Field(0, ge=0)
    # testing
    unit_test_files: int = Field(0, ge=0)
    integration_scenarios: int = Field(0, ge=0)
    requires_mocking: bool = False
    e2e_scenarios: int = Field(0, ge=0)
    # integration risk
    file_overlaps: int = Field(0, ge=0)
    shared_interface_changes: int = Field(0, ge=0)
    cross_cutting_concerns: int = Field(0, ge=0)
    # uncertainty
    unfamiliar_tech: bool = False
    unclear_requirements: bool = False
    missing_docs: bool = False
    requires_research: bool = False


class WorkUnit(_UnitBase):
    """The atomic schedulable item of a decomposed task."""

    id: str = Field(..., min_length=1, pattern=UNIT_ID_PATTERN)
    title: str = Field(..., min_length=1)
    description: str = ""
    depends_on: tuple[str, ...] = ()
    files: tuple[FileChange, ...] = ()
    ownership: OwnershipMode = "exclusive"
    size: SizeEstimate = Field(default_factory=SizeEstimate)
    flags: ComplexityFlags = Field(default_factory=ComplexityFlags)
    capabilities: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _check_refs(self) -> WorkUnit:
        if self.id in self.depends_on:
            raise ValueError(f"unit {self.id} depends on itself")
        if len(set(self.depends_on)) != len(self.depends_on):
            raise ValueError(f"unit {self.id} lists a prerequisite twice")
        seen: set[str] = set()
        for change in self.files:
            if change.path in seen:
                raise ValueError(f"unit {self.id} declares {change.path} twice")
            seen.add(change.path)
        return self

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(change.path for change in self.files)

    @property
    def has_concrete_paths(self) -> bool:
        return bool(self.files)

    @property
    def file_count(self) -> int:
        """Effective file count: the larger of declared paths and the estimate."""
        return max(len(self.files), self.size.estimated_files or 0)

    @property
    def line_count(self) -> int:
        return self.size.estimated_lines

    def with_files(self, extra_paths: Iterable[str], change: ChangeKind = "small") -> WorkUnit:
        """Return a copy that also declares ``extra_paths``."""
        known = set(self.paths)
        added = []
        for path in extra_paths:
            normalized = normalize_path(path)
            if normalized and normalized not in known:
                known.add(normalized)
                added.append(FileChange(path=normalized, change=change))
        if not added:
            return self
        return self.model_copy(update={"files": self.files + tuple(added)})

    def with_prerequisites(self, extra: Iterable[str]) -> WorkUnit:
        deps = list(self.depends_on)
        for dep in extra:
            if dep != self.id and dep not in deps:
                deps.append(dep)
        if len(deps) == len(self.depends_on):
            return self
        return self.model_copy(update={"depends_on": tuple(deps)})


class TaskSpec(_UnitBase):
    """A development task plus the unit drafts proposed for it.

    ``existing_files`` carries prior-state hints about the repository layout.
    """

    schema_version: Literal[1] = Field(1, description="Schema version for task documents")
    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    description: str = ""
    existing_files: tuple[str, ...] = ()
    units: tuple[WorkUnit, ...] = ()


TASKSPEC_SCHEMA = TaskSpec.model_json_schema()


def load_task(data: dict[str, Any]) -> TaskSpec:
    return TaskSpec.model_validate(data)


def read_task_document(path: Path | str) -> dict[str, Any]:
    """Read a YAML (.yaml, .yml) or JSON (.json) task document.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the extension is unsupported or the document is not a mapping.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text)
    elif suffix == ".json":
        data = json.loads(text)
    else:
        raise ValueError(f"Unsupported file extension: {suffix}. Use .yaml, .yml, or .json")
    if not isinstance(data, dict):
        raise ValueError(f"Task document must be a mapping: {path}")
    return data


def load_task_from_file(path: Path | str, *, strict: bool = False) -> TaskSpec:
    data = read_task_document(path)
    if strict:
        return validate_strict(data)
    return load_task(data)


def get_json_schema() -> dict[str, Any]:
    return TASKSPEC_SCHEMA


def validate_against_json_schema(data: dict[str, Any]) -> list[str]:
    """Validate raw task data against the exported JSON schema.

    Returns:
        Error messages prefixed with the JSON path of the offending value,
        sorted by path. Empty when the document is valid.
    """
    validator = Draft202012Validator(get_json_schema())
    errors = []
    for error in sorted(validator.iter_errors(data), key=lambda e: list(map(str, e.absolute_path))):
        location = "/".join(str(p) for p in error.absolute_path) or "<root>"
        errors.append(f"{location}: {error.message}")
    return errors


def validate_strict(data: dict[str, Any]) -> TaskSpec:
    """Validate with both the JSON schema and the pydantic model.

    Raises:
        TaskSpecError: Carrying every error found by either validator.
    """
    errors = validate_against_json_schema(data)
    if errors:
        raise TaskSpecError(errors)
    try:
        return TaskSpec.model_validate(data)
    except ValidationError as exc:
        raise TaskSpecError(
            ["/".join(str(p) for p in err["loc"]) + f": {err['msg']}" for err in exc.errors()]
        ) from exc
