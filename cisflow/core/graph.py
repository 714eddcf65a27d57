"""
Task graph: named tasks with declared dependencies and a deterministic
topological order.

Dependencies must be declared before the dependent unless the task is added
with ``defer_validation=True``; deferred graphs are checked by ``finalize()``.
All structural errors surface here, before any external command runs.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set, Union

from .errors import CycleDetectedError, DuplicateTaskError, UnknownDependencyError, UnknownTargetError
from .models import TaskSpec

logger = logging.getLogger(__name__)


class TaskGraph:
    """Directed acyclic graph of tasks keyed by name.

    Public API:
      - add_task(name, deps, command, **options) -> TaskSpec
      - add(spec: TaskSpec, defer_validation=False) -> TaskSpec
      - finalize() -> None
      - resolve_order(targets=None) -> list[str]
      - dependencies_of(name) -> set[str]
      - get(name) -> TaskSpec
    """

    def __init__(self) -> None:
        # dict preserves declaration order, used to break ties
        self._tasks: Dict[str, TaskSpec] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def tasks(self) -> List[TaskSpec]:
        return list(self._tasks.values())

    def get(self, name: str) -> TaskSpec:
        return self._tasks[name]

    def add_task(
        self,
        name: str,
        deps: Optional[Iterable[str]] = None,
        command: Union[str, List[str]] = "",
        *,
        defer_validation: bool = False,
        **options,
    ) -> TaskSpec:
        spec = TaskSpec(name=name, deps=list(deps or []), command=command, **options)
        return self.add(spec, defer_validation=defer_validation)

    def add(self, spec: TaskSpec, defer_validation: bool = False) -> TaskSpec:
        if spec.name in self._tasks:
            raise DuplicateTaskError(spec.name)
        if not defer_validation:
            for dep in spec.deps:
                if dep not in self._tasks:
                    raise UnknownDependencyError(spec.name, dep)
        self._tasks[spec.name] = spec
        logger.debug(f"Task added: {spec.name} deps={spec.deps}")
        return spec

    def finalize(self) -> None:
        """Validate every dependency reference and reject cycles."""
        for spec in self._tasks.values():
            for dep in spec.deps:
                if dep not in self._tasks:
                    raise UnknownDependencyError(spec.name, dep)
        self.resolve_order()

    def dependencies_of(self, name: str) -> Set[str]:
        """Transitive dependencies of a task (excluding itself)."""
        seen: Set[str] = set()
        stack = list(self._tasks[name].deps)
        while stack:
            dep = stack.pop()
            if dep in seen:
                continue
            seen.add(dep)
            if dep in self._tasks:
                stack.extend(self._tasks[dep].deps)
        return seen

    def resolve_order(self, targets: Optional[Iterable[str]] = None) -> List[str]:
        """Return task names so that each appears after all its dependencies.

        Args:
            targets: restrict the order to these tasks and their transitive
                dependencies; all tasks when None

        Raises:
            CycleDetectedError: naming the members of a cycle
            UnknownTargetError: a target is not defined
            UnknownDependencyError: a dependency is not defined
        """
        if targets is None:
            selected = list(self._tasks)
        else:
            wanted: Set[str] = set()
            for t in targets:
                if t not in self._tasks:
                    raise UnknownTargetError(t)
                wanted.add(t)
                wanted |= self.dependencies_of(t)
            selected = [n for n in self._tasks if n in wanted]

        order: List[str] = []
        # 0 = unvisited, 1 = on stack, 2 = done
        state: Dict[str, int] = {}
        for root in selected:
            if state.get(root) == 2:
                continue
            self._visit(root, state, order, path=[])
        return order

    def _visit(self, name: str, state: Dict[str, int], order: List[str], path: List[str]) -> None:
        # Iterative DFS; `path` mirrors the grey stack so a back edge yields the cycle
        stack = [(name, iter(self._tasks[name].deps))]
        state[name] = 1
        path.append(name)
        while stack:
            node, children = stack[-1]
            advanced = False
            for dep in children:
                if dep not in self._tasks:
                    raise UnknownDependencyError(node, dep)
                s = state.get(dep, 0)
                if s == 1:
                    raise CycleDetectedError(path[path.index(dep):])
                if s == 0:
                    state[dep] = 1
                    path.append(dep)
                    stack.append((dep, iter(self._tasks[dep].deps)))
                    advanced = True
                    break
            if not advanced:
                stack.pop()
                path.pop()
                state[node] = 2
                order.append(node)
