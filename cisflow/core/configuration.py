"""
Configuration management for cisflow.

Two sources:
- Environment settings (region, resource-name prefix, image tag, registry
  namespace) read once at startup into an immutable RunSettings
- Workflow YAML files (parameters, tasks, entry points) validated with the
  Pydantic models in ``models.py``; built-in patterns ship in
  ``cisflow/patterns``
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from .errors import ConfigurationError, GraphError
from .graph import TaskGraph
from .models import WorkflowSpec

logger = logging.getLogger(__name__)

PATTERNS_DIR = Path(__file__).resolve().parents[1] / "patterns"

DEFAULT_REGION = "us-west-2"
DEFAULT_IMAGE_TAG = "latest"
DEFAULT_NAMESPACE = "cis_ami"


@dataclass(frozen=True)
class RunSettings:
    """Environment-provided configuration, immutable for the run."""
    region: str
    name: str
    image_tag: str = DEFAULT_IMAGE_TAG
    registry_namespace: str = DEFAULT_NAMESPACE
    log_dir: Optional[str] = None

    @classmethod
    def from_env(cls, default_name: str, environ: Optional[Mapping[str, str]] = None) -> "RunSettings":
        env = os.environ if environ is None else environ
        settings = cls(
            region=env.get("AWS_REGION") or DEFAULT_REGION,
            name=env.get("CISFLOW_NAME") or default_name,
            image_tag=env.get("CISFLOW_IMAGE_TAG") or DEFAULT_IMAGE_TAG,
            registry_namespace=env.get("CISFLOW_REGISTRY_NAMESPACE") or DEFAULT_NAMESPACE,
            log_dir=env.get("CISFLOW_LOG_DIR") or None,
        )
        for field_name in ("region", "name", "image_tag", "registry_namespace"):
            if not getattr(settings, field_name).strip():
                raise ConfigurationError(f"setting '{field_name}' must not be empty")
        return settings

    def template_values(self) -> Dict[str, str]:
        """Settings exposed to templates as literal parameters."""
        values = asdict(self)
        values.pop("log_dir")
        return values


SETTING_NAMES = ("region", "name", "image_tag", "registry_namespace")


def builtin_patterns() -> List[str]:
    """Names of the workflows shipped with the package."""
    return sorted(p.stem for p in PATTERNS_DIR.glob("*.yaml"))


def resolve_pattern(pattern: str) -> Path:
    """Return the workflow file for a built-in pattern name or a path."""
    candidate = Path(pattern)
    if candidate.suffix in (".yaml", ".yml") or candidate.exists():
        if not candidate.exists():
            raise ConfigurationError(f"workflow file not found: {candidate}")
        return candidate
    builtin = PATTERNS_DIR / f"{pattern}.yaml"
    if builtin.exists():
        return builtin
    known = ", ".join(builtin_patterns()) or "(none)"
    raise ConfigurationError(f"unknown pattern '{pattern}'; built-in patterns: {known}")


class ConfigurationLoader:
    """Load and validate a workflow YAML file."""

    def __init__(self, workflow_file: Path):
        self.workflow_file = Path(workflow_file)

    def load(self) -> WorkflowSpec:
        try:
            raw = yaml.safe_load(self.workflow_file.read_text())
        except OSError as e:
            raise ConfigurationError(f"cannot read {self.workflow_file}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML in {self.workflow_file}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{self.workflow_file}: top level must be a mapping")
        try:
            spec = WorkflowSpec.model_validate(raw)
        except ValidationError as e:
            raise ConfigurationError(f"{self.workflow_file}: {e}") from e

        clashes = sorted({p.name for p in spec.parameters} & set(SETTING_NAMES))
        if clashes:
            raise ConfigurationError(
                f"{self.workflow_file}: parameter name(s) reserved for settings: {', '.join(clashes)}"
            )
        logger.info(f"Loaded workflow {spec.name} from {self.workflow_file} "
                    f"({len(spec.tasks)} tasks, {len(spec.parameters)} parameters)")
        return spec


def build_graph(spec: WorkflowSpec) -> TaskGraph:
    """Build and validate the TaskGraph; structural errors surface here."""
    graph = TaskGraph()
    for task in spec.tasks:
        graph.add(task, defer_validation=True)
    graph.finalize()

    producers: Dict[str, str] = {}
    for task in spec.tasks:
        for pub in task.publish:
            if pub.artifact in producers:
                raise GraphError(f"artifact '{pub.artifact}' is published by both "
                                 f"'{producers[pub.artifact]}' and '{task.name}'", task=task.name)
            producers[pub.artifact] = task.name
    # A task may only template an artifact that one of its dependencies publishes
    for task in spec.tasks:
        upstream = graph.dependencies_of(task.name)
        for name in task.requires:
            producer = producers.get(name)
            if producer is not None and producer not in upstream:
                raise GraphError(f"uses artifact '{name}' from '{producer}', which is not a dependency",
                                 task=task.name)
    return graph
