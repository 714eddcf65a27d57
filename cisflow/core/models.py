"""
Pydantic models for workflow files (parameters + tasks + entry points) and
the small runtime records produced during a run.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .template_engine import placeholders

_SAFE_NAME = re.compile(r"[A-Za-z0-9._-]+")
_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def _check_name(v: str) -> str:
    # only allow a-zA-Z0-9._- so names are usable as log file names
    if not _SAFE_NAME.fullmatch(v or ""):
        raise ValueError(f"invalid name: {v!r}")
    return v


def _check_ident(v: str) -> str:
    # parameter and artifact names double as template placeholders
    if not _IDENT.fullmatch(v or ""):
        raise ValueError(f"invalid identifier: {v!r}")
    return v


class ExtractionRule(BaseModel):
    """How to pull one identifier out of a tool's output.

    ``json``: dotted ``path`` into the parsed document; integer segments index
    lists and may be negative (``builds.-1.artifact_id``). ``split``/``index``
    optionally cut the found string (``":"``/``1`` keeps what follows the colon).

    ``regex``: ``pattern`` searched in the raw text; ``group`` selects the value.
    """
    kind: Literal["json", "regex"] = "json"
    path: Optional[str] = None
    split: Optional[str] = None
    index: Optional[int] = None
    pattern: Optional[str] = None
    group: Union[int, str] = 1

    @model_validator(mode="after")
    def check_kind(self) -> "ExtractionRule":
        if self.kind == "json" and not self.path:
            raise ValueError("json extraction rule requires 'path'")
        if self.kind == "regex":
            if not self.pattern:
                raise ValueError("regex extraction rule requires 'pattern'")
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"invalid regex pattern: {e}") from e
        if self.index is not None and self.split is None:
            raise ValueError("'index' requires 'split'")
        return self


class PublishSpec(BaseModel):
    artifact: str
    key: str
    file: Optional[str] = None  # relative to the task cwd; stdout when unset
    rule: ExtractionRule
    overwrite: bool = True

    @field_validator("artifact")
    @classmethod
    def artifact_safe(cls, v: str) -> str:
        return _check_ident(v)


class TaskSpec(BaseModel):
    name: str
    description: str = ""
    deps: List[str] = Field(default_factory=list)
    command: Union[List[str], str]
    requires: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None
    destructive: bool = False
    confirm: Optional[str] = None
    ok_exit_codes: List[int] = Field(default_factory=lambda: [0])
    skip_if_exists: Optional[str] = None
    publish: List[PublishSpec] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def name_safe(cls, v: str) -> str:
        return _check_name(v)

    @field_validator("command")
    @classmethod
    def command_not_empty(cls, v: Union[List[str], str]) -> Union[List[str], str]:
        if not v or (isinstance(v, str) and not v.strip()):
            raise ValueError("command must not be empty")
        return v

    @field_validator("timeout")
    @classmethod
    def timeout_positive(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("timeout must be > 0")
        return v

    @model_validator(mode="after")
    def collect_requires(self) -> "TaskSpec":
        # Everything the templates reference is required, plus explicit names
        found = set(self.requires)
        found |= placeholders(self.command)
        for text in [self.cwd, self.skip_if_exists, *self.env.values()]:
            if text:
                found |= placeholders(text)
        for p in self.publish:
            found |= placeholders(p.key)
            if p.file:
                found |= placeholders(p.file)
        self.requires = sorted(found)
        return self


class ParameterSpec(BaseModel):
    """A named value needed by task templates.

    ``lookup`` runs ``command`` (argv, itself templated over other parameters)
    and takes trimmed stdout; ``literal`` uses ``value``; ``computed`` renders
    ``template`` from other parameters.
    """
    name: str
    description: str = ""
    method: Literal["lookup", "literal", "computed"]
    command: Optional[List[str]] = None
    value: Optional[str] = None
    template: Optional[str] = None
    fallback: Optional[str] = None
    fatal_on_fallback: bool = True
    empty_values: List[str] = Field(default_factory=lambda: ["", "None"])
    timeout: Optional[float] = 60.0

    @field_validator("name")
    @classmethod
    def name_safe(cls, v: str) -> str:
        return _check_ident(v)

    @model_validator(mode="after")
    def check_method(self) -> "ParameterSpec":
        if self.method == "lookup" and not self.command:
            raise ValueError(f"lookup parameter '{self.name}' requires 'command'")
        if self.method == "literal" and self.value is None:
            raise ValueError(f"literal parameter '{self.name}' requires 'value'")
        if self.method == "computed" and self.template is None:
            raise ValueError(f"computed parameter '{self.name}' requires 'template'")
        return self

    @property
    def inputs(self) -> set:
        """Names of other parameters this one is built from."""
        if self.method == "lookup":
            return placeholders(self.command or [])
        if self.method == "computed":
            return placeholders(self.template or "")
        return set()


class WorkflowSpec(BaseModel):
    name: str
    description: str = ""
    entry_points: Dict[str, List[str]] = Field(default_factory=dict)
    parameters: List[ParameterSpec] = Field(default_factory=list)
    tasks: List[TaskSpec] = Field(default_factory=list)

    @field_validator("entry_points", mode="before")
    @classmethod
    def targets_as_list(cls, v):
        # `plan: plan` and `build-image: [build-level-1, build-level-2]` are both accepted
        if isinstance(v, dict):
            return {k: [t] if isinstance(t, str) else t for k, t in v.items()}
        return v

    @model_validator(mode="after")
    def check_names(self) -> "WorkflowSpec":
        seen = set()
        for p in self.parameters:
            if p.name in seen:
                raise ValueError(f"duplicate parameter: {p.name}")
            seen.add(p.name)
        task_names = {t.name for t in self.tasks}
        for entry, targets in self.entry_points.items():
            if not targets:
                raise ValueError(f"entry point '{entry}' has no target task")
            for target in targets:
                if target not in task_names:
                    raise ValueError(f"entry point '{entry}' targets undefined task '{target}'")
        return self

    @property
    def artifact_names(self) -> set:
        return {p.artifact for t in self.tasks for p in t.publish}


# ----- runtime records -----

class ResolutionStatus(Enum):
    RESOLVED = "resolved"
    LITERAL = "literal"
    COMPUTED = "computed"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class Resolution:
    name: str
    value: str
    status: ResolutionStatus
    error: Optional[str] = None

    @property
    def fallback_used(self) -> bool:
        return self.status is ResolutionStatus.FALLBACK


@dataclass
class ExecutionResult:
    task: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float
    command: str = ""
    skipped: bool = False


@dataclass(frozen=True)
class Artifact:
    name: str
    value: str
    registry_key: str
    overwrite: bool = True
