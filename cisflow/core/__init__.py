"""
Core modules for task graphs, parameter resolution, execution and artifact publication.
"""

from .configuration import ConfigurationLoader, RunSettings, build_graph, builtin_patterns, resolve_pattern
from .controller import RunReport, WorkflowController
from .executor import TaskRunner, confirm, run_process
from .graph import TaskGraph
from .models import Artifact, ExecutionResult, ParameterSpec, Resolution, ResolutionStatus, TaskSpec, WorkflowSpec
from .parameters import ParameterResolver
from .publisher import ArtifactPublisher, SsmParameterRegistry, registry_key

__all__ = [
    "ConfigurationLoader",
    "RunSettings",
    "build_graph",
    "builtin_patterns",
    "resolve_pattern",
    "RunReport",
    "WorkflowController",
    "TaskRunner",
    "confirm",
    "run_process",
    "TaskGraph",
    "Artifact",
    "ExecutionResult",
    "ParameterSpec",
    "Resolution",
    "ResolutionStatus",
    "TaskSpec",
    "WorkflowSpec",
    "ParameterResolver",
    "ArtifactPublisher",
    "SsmParameterRegistry",
    "registry_key",
]
