"""
Workflow controller: drives one entry point end to end.

Design goals:
- Load and validate the workflow up front (graph errors before any side effect)
- Resolve every parameter the selected tasks need before the first task runs,
  refusing sentinel values unless explicitly allowed
- Delegate execution to TaskRunner and publication to ArtifactPublisher
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from .configuration import ConfigurationLoader, RunSettings, build_graph
from .errors import CisflowError, ConfigurationError, MissingParameterError
from .executor import TaskRunner
from .models import Artifact, ExecutionResult, Resolution
from .parameters import LookupFn, ParameterResolver
from .publisher import ArtifactPublisher, SsmParameterRegistry

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    entry: str
    order: List[str]
    results: List[ExecutionResult] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)
    resolutions: Dict[str, Resolution] = field(default_factory=dict)
    dry_run: bool = False
    failed_task: Optional[str] = None


class WorkflowController:
    def __init__(
        self,
        workflow_file: Path,
        settings: Optional[RunSettings] = None,
        *,
        registry=None,
        lookup: Optional[LookupFn] = None,
        confirm_fn: Optional[Callable[[str], bool]] = None,
        assume_yes: bool = False,
        dry_run: bool = False,
        allow_fallback: bool = False,
        workdir: Optional[Path] = None,
        echo: bool = False,
        confirm_timeout: Optional[float] = None,
    ):
        self.workflow_file = Path(workflow_file)
        self.spec = ConfigurationLoader(self.workflow_file).load()
        self.graph = build_graph(self.spec)
        self.settings = settings or RunSettings.from_env(self.spec.name)
        self.registry = registry
        self.lookup = lookup
        self.confirm_fn = confirm_fn
        self.assume_yes = assume_yes
        self.dry_run = dry_run
        self.allow_fallback = allow_fallback
        self.workdir = Path(workdir) if workdir else Path.cwd()
        self.echo = echo
        self.confirm_timeout = confirm_timeout
        self.last_report: Optional[RunReport] = None

    # ---------- planning ----------
    @property
    def entry_points(self) -> Dict[str, List[str]]:
        return dict(self.spec.entry_points)

    def order_for(self, entry: str) -> List[str]:
        targets = self.spec.entry_points.get(entry)
        if targets is None:
            known = ", ".join(sorted(self.spec.entry_points))
            raise ConfigurationError(f"workflow {self.spec.name} has no entry point '{entry}' (known: {known})")
        return self.graph.resolve_order(targets)

    def required_parameters(self, order: List[str]) -> Set[str]:
        artifacts = self.spec.artifact_names
        needed: Set[str] = set()
        for name in order:
            needed |= set(self.graph.get(name).requires) - artifacts
        return needed

    def _check_defined(self, order: List[str], resolver: ParameterResolver) -> None:
        artifacts = self.spec.artifact_names
        for name in order:
            missing = resolver.unresolvable(set(self.graph.get(name).requires) - artifacts)
            if missing:
                raise MissingParameterError(missing, task=name)

    @property
    def log_dir(self) -> Path:
        if self.settings.log_dir:
            return Path(self.settings.log_dir)
        return self.workdir / "cisflow_data" / "logs"

    # ---------- execution ----------
    def execute(self, entry: str) -> RunReport:
        """Run ``entry``: resolve parameters, then tasks in dependency order."""
        order = self.order_for(entry)
        logger.info(f"Entry {entry}: {' -> '.join(order)}")
        report = RunReport(entry=entry, order=order, dry_run=self.dry_run)
        self.last_report = report

        with ParameterResolver(self.spec.parameters, lookup=self.lookup) as resolver:
            for key, value in self.settings.template_values().items():
                resolver.seed(key, value)
            self._check_defined(order, resolver)

            allow = self.allow_fallback
            if self.dry_run and not allow:
                logger.warning("dry-run: fallback values are shown instead of aborting")
                allow = True
            report.resolutions = resolver.require(self.required_parameters(order), allow_fallback=allow)

            publisher = ArtifactPublisher(self.registry or SsmParameterRegistry(region=self.settings.region))
            runner = TaskRunner(
                self.graph,
                publisher=publisher,
                confirm_fn=self.confirm_fn,
                assume_yes=self.assume_yes,
                dry_run=self.dry_run,
                log_dir=self.log_dir,
                echo=self.echo,
                workdir=self.workdir,
                confirm_timeout=self.confirm_timeout,
            )
            try:
                runner.run(order, resolver.values())
            except CisflowError as e:
                report.failed_task = e.task
                raise
            finally:
                report.results = runner.results
                report.artifacts = publisher.published
        return report
