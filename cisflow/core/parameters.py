"""
Run-scoped parameter resolution.

Values such as the account id, VPC id, subnet id or latest source AMI are
looked up once per run by invoking external commands, then cached
write-once. A failed lookup either substitutes the configured sentinel
(``status=fallback``) or raises ``ParameterResolutionError``; callers decide
via ``require()`` whether a sentinel may flow into task commands.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from .errors import ParameterResolutionError, TaskTimeoutError
from .executor import run_process
from .models import ExecutionResult, ParameterSpec, Resolution, ResolutionStatus
from .template_engine import render_command, render_text

logger = logging.getLogger(__name__)

LookupFn = Callable[[List[str], Optional[float]], ExecutionResult]


def _default_lookup(argv: List[str], timeout: Optional[float]) -> ExecutionResult:
    return run_process(argv, name="lookup", timeout=timeout)


class ParameterResolver:
    """Resolve and cache parameter values for a single run.

    The cache lives only as long as the resolver; use it as a context manager
    (or call ``close()``) so nothing leaks into the next run.
    """

    def __init__(self, specs: Iterable[ParameterSpec] = (), lookup: Optional[LookupFn] = None):
        self._specs: Dict[str, ParameterSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise ParameterResolutionError(spec.name, "defined more than once")
            self._specs[spec.name] = spec
        self._lookup = lookup or _default_lookup
        self._cache: Dict[str, Resolution] = {}
        self._resolving: List[str] = []
        self._closed = False

    def __enter__(self) -> "ParameterResolver":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._cache.clear()
        self._closed = True

    def __contains__(self, name: object) -> bool:
        return name in self._specs or name in self._cache

    def is_resolved(self, name: str) -> bool:
        return name in self._cache

    def spec(self, name: str) -> Optional[ParameterSpec]:
        return self._specs.get(name)

    def seed(self, name: str, value: str) -> Resolution:
        """Cache a literal value supplied from outside (e.g. environment settings)."""
        res = Resolution(name=name, value=str(value), status=ResolutionStatus.LITERAL)
        self._store(res)
        return res

    def values(self) -> Mapping[str, str]:
        """Read-only snapshot of every value resolved so far."""
        return MappingProxyType({k: r.value for k, r in self._cache.items()})

    def resolutions(self) -> Mapping[str, Resolution]:
        return MappingProxyType(dict(self._cache))

    def _store(self, res: Resolution) -> None:
        if self._closed:
            raise ParameterResolutionError(res.name, "resolver already closed")
        if res.name in self._cache:
            raise ParameterResolutionError(res.name, "already resolved for this run")
        self._cache[res.name] = res

    # ---------- resolution ----------
    def resolve(self, name: str) -> Resolution:
        """Return the cached resolution, or resolve it now.

        Raises:
            ParameterResolutionError: unknown name, dependency cycle, or a
                failed lookup with no fallback configured
        """
        cached = self._cache.get(name)
        if cached is not None:
            return cached
        if self._closed:
            raise ParameterResolutionError(name, "resolver already closed")
        spec = self._specs.get(name)
        if spec is None:
            raise ParameterResolutionError(name, "not defined")
        if name in self._resolving:
            cycle = self._resolving[self._resolving.index(name):] + [name]
            raise ParameterResolutionError(name, "circular reference: " + " -> ".join(cycle))

        self._resolving.append(name)
        try:
            inputs = {n: self.resolve(n) for n in sorted(spec.inputs)}
        finally:
            self._resolving.pop()

        if spec.method == "literal":
            res = Resolution(name, str(spec.value), ResolutionStatus.LITERAL)
        elif spec.method == "computed":
            res = self._compute(spec, inputs)
        else:
            res = self._lookup_value(spec, inputs)
        self._store(res)
        return res

    def _compute(self, spec: ParameterSpec, inputs: Dict[str, Resolution]) -> Resolution:
        value = render_text(spec.template or "", {k: r.value for k, r in inputs.items()})
        tainted = sorted(k for k, r in inputs.items() if r.fallback_used)
        if tainted:
            # Derived from a sentinel; keep the fallback status visible
            return Resolution(spec.name, value, ResolutionStatus.FALLBACK,
                              error=f"derived from fallback value(s): {', '.join(tainted)}")
        return Resolution(spec.name, value, ResolutionStatus.COMPUTED)

    def _lookup_value(self, spec: ParameterSpec, inputs: Dict[str, Resolution]) -> Resolution:
        tainted = sorted(k for k, r in inputs.items() if r.fallback_used)
        if tainted:
            # Never feed a sentinel into a live lookup
            return self._fail(spec, f"input(s) used fallback: {', '.join(tainted)}")

        argv = render_command(spec.command or [], {k: r.value for k, r in inputs.items()})
        logger.debug(f"Looking up parameter {spec.name}: {argv}")
        try:
            result = self._lookup(list(argv), spec.timeout)
        except TaskTimeoutError:
            return self._fail(spec, f"lookup timed out after {spec.timeout}s")
        except OSError as e:
            return self._fail(spec, f"lookup could not start: {e}")

        if result.exit_code != 0:
            detail = (result.stderr or "").strip().splitlines()
            cause = f"lookup exited with code {result.exit_code}"
            if detail:
                cause += f": {detail[-1]}"
            return self._fail(spec, cause)
        value = (result.stdout or "").strip()
        if value in spec.empty_values:
            return self._fail(spec, f"lookup returned no value ({value!r})")
        logger.info(f"Parameter {spec.name} resolved")
        return Resolution(spec.name, value, ResolutionStatus.RESOLVED)

    def _fail(self, spec: ParameterSpec, cause: str) -> Resolution:
        if spec.fallback is None:
            raise ParameterResolutionError(spec.name, cause)
        logger.warning(f"Parameter {spec.name}: {cause}; using fallback {spec.fallback!r}")
        return Resolution(spec.name, spec.fallback, ResolutionStatus.FALLBACK, error=cause)

    def require(self, names: Iterable[str], allow_fallback: bool = False) -> Dict[str, Resolution]:
        """Resolve ``names`` and enforce the fallback policy.

        A fallback is fatal when the parameter is ``fatal_on_fallback`` and the
        caller does not pass ``allow_fallback=True``. Call this before starting
        any task so a sentinel never reaches an external command.
        """
        out: Dict[str, Resolution] = {}
        fatal: List[Resolution] = []
        for name in sorted(set(names)):
            res = self.resolve(name)
            out[name] = res
            if not res.fallback_used:
                continue
            spec = self._specs.get(name)
            if spec is not None and spec.fatal_on_fallback and not allow_fallback:
                fatal.append(res)
            else:
                logger.warning(f"Proceeding with fallback value for {name}: {res.value!r}")
        if fatal:
            first = fatal[0]
            others = [r.name for r in fatal[1:]]
            cause = f"lookup failed ({first.error}); fallback {first.value!r} is not allowed"
            if others:
                cause += f" (also: {', '.join(others)})"
            raise ParameterResolutionError(first.name, cause)
        return out

    def unresolvable(self, names: Iterable[str]) -> Set[str]:
        """Names that are neither cached nor defined."""
        return {n for n in names if n not in self}

