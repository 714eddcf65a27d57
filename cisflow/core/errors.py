"""
Error taxonomy and exit-code mapping for cisflow runs.

Every failure raised by the core carries the offending task name (when there
is one), a human-readable cause, and the process exit code the CLI should use.
"""

from typing import Iterable, List, Optional

# Exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_DECLINED = 3
EXIT_TIMEOUT = 124
EXIT_INTERRUPTED = 130

_RESERVED_EXIT_CODES = (EXIT_DECLINED, EXIT_TIMEOUT, EXIT_INTERRUPTED)

DIAGNOSTIC_TAIL_LINES = 40


def tail_lines(text: str, max_lines: int = DIAGNOSTIC_TAIL_LINES) -> str:
    """Return the last ``max_lines`` non-trailing lines of captured output."""
    if not text:
        return ""
    lines = text.rstrip().splitlines()
    return "\n".join(lines[-max_lines:])


def format_diagnostics(stdout: str = "", stderr: str = "") -> str:
    """Combine captured streams into a short report, stderr first."""
    parts = []
    err = tail_lines(stderr)
    out = tail_lines(stdout)
    if err:
        parts.append(f"--- stderr (tail) ---\n{err}")
    if out:
        parts.append(f"--- stdout (tail) ---\n{out}")
    return "\n".join(parts)


class CisflowError(Exception):
    """Base class of all orchestration failures."""

    exit_code = EXIT_FAILURE

    def __init__(self, message: str, task: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.task = task

    def describe(self) -> str:
        prefix = f"[{self.task}] " if self.task else ""
        return f"{prefix}{self.message}"


class ConfigurationError(CisflowError):
    """Workflow file or environment settings are invalid."""


# ----- graph -----

class GraphError(CisflowError):
    """Task graph is malformed; raised before any task runs."""


class DuplicateTaskError(GraphError):
    def __init__(self, name: str):
        super().__init__(f"task '{name}' is already defined", task=name)


class UnknownDependencyError(GraphError):
    def __init__(self, name: str, dependency: str):
        super().__init__(f"task '{name}' depends on undefined task '{dependency}'", task=name)
        self.dependency = dependency


class UnknownTargetError(GraphError):
    def __init__(self, target: str):
        super().__init__(f"unknown target task '{target}'")
        self.target = target


class CycleDetectedError(GraphError):
    def __init__(self, members: Iterable[str]):
        self.members: List[str] = list(members)
        super().__init__("dependency cycle detected: " + " -> ".join(self.members + self.members[:1]))


# ----- parameters -----

class ParameterResolutionError(CisflowError):
    """A parameter lookup failed with no usable value."""

    def __init__(self, name: str, cause: str, task: Optional[str] = None):
        super().__init__(f"parameter '{name}': {cause}", task=task)
        self.parameter = name


class MissingParameterError(CisflowError):
    """A command template references a parameter that was never resolved."""

    def __init__(self, names: Iterable[str], task: Optional[str] = None):
        self.parameters = sorted(set(names))
        super().__init__("unresolved parameter(s): " + ", ".join(self.parameters), task=task)


# ----- execution -----

class TaskFailedError(CisflowError):
    """A task's command exited with a code outside its accepted set."""

    def __init__(self, task: str, exit_code: int, diagnostics: str = ""):
        super().__init__(f"command exited with code {exit_code}", task=task)
        self.returncode = exit_code
        self.diagnostics = diagnostics
        # Propagate the subprocess code unless it is unusable or collides with a reserved code
        usable = 0 < exit_code < 256 and exit_code not in _RESERVED_EXIT_CODES
        self.exit_code = exit_code if usable else EXIT_FAILURE


class TaskTimeoutError(CisflowError):
    exit_code = EXIT_TIMEOUT

    def __init__(self, task: str, timeout: float, diagnostics: str = ""):
        super().__init__(f"command timed out after {timeout:g}s and was terminated", task=task)
        self.timeout = timeout
        self.diagnostics = diagnostics


class ConfirmationDeclinedError(CisflowError):
    exit_code = EXIT_DECLINED

    def __init__(self, task: str):
        super().__init__("destructive operation not confirmed; nothing was changed", task=task)


# ----- artifacts -----

class ExtractionError(CisflowError):
    """Tool output does not contain the expected field or shape."""


class PublishError(CisflowError):
    """Writing an artifact to the external registry failed."""
