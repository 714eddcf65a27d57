"""
TaskRunner: sequential, fail-fast execution of ordered tasks.

Behavior:
- Render each task command from resolved parameters (MissingParameterError
  when a placeholder was never resolved)
- Ask once for confirmation before the first destructive task
- Run the command in its own process group; the group is terminated and
  reaped on every exit path (timeout, interrupt, error)
- Accept only the task's ok_exit_codes; anything else aborts the sequence
- Hand successful build output to the ArtifactPublisher
"""

from __future__ import annotations

import logging
import os
import select
import signal
import subprocess
import sys
import threading
import time
from collections import ChainMap
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Callable, Dict, Iterator, List, Mapping, Optional, Union

from .errors import (
    CisflowError,
    ConfirmationDeclinedError,
    ExtractionError,
    PublishError,
    TaskFailedError,
    TaskTimeoutError,
    format_diagnostics,
)
from .models import ExecutionResult, TaskSpec
from .template_engine import display_command, render_command, render_text

logger = logging.getLogger(__name__)

Command = Union[str, List[str]]
LineSink = Callable[[str, str], None]

KILL_GRACE_SEC = 5.0
DEFAULT_CONFIRM_PROMPT = "Are you sure you want to destroy all resources?"
_AFFIRMATIVE = ("y", "yes")


# -----------------------------
# Scoped subprocess handling
# -----------------------------

def _terminate_group(proc: subprocess.Popen, grace: float = KILL_GRACE_SEC) -> None:
    """SIGTERM the process group, SIGKILL after ``grace`` seconds, then reap."""
    if proc.poll() is not None:
        # Leader is gone; still clear any children left in its group
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning(f"pid {proc.pid} ignored SIGTERM; sending SIGKILL")
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()
        proc.wait()


@contextmanager
def spawned(command: Command, cwd: Optional[Path] = None, env: Optional[Dict[str, str]] = None,
            grace: float = KILL_GRACE_SEC) -> Iterator[subprocess.Popen]:
    """Start ``command`` in a new session and guarantee it is reaped.

    Leaving the block normally waits for the process; leaving it through an
    exception (timeout, KeyboardInterrupt, ...) kills the whole group first.
    """
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)
    proc = subprocess.Popen(
        command,
        shell=isinstance(command, str),
        cwd=str(cwd) if cwd else None,
        env=full_env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=True,
    )
    logger.debug(f"spawned pid={proc.pid}: {display_command(command)}")
    try:
        yield proc
    except BaseException:
        _terminate_group(proc, grace)
        raise
    finally:
        if proc.poll() is None:
            proc.wait()
        # Leader is reaped; clear anything it left running in its group
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                stream.close()


class _PipeReader(threading.Thread):
    """Drain one pipe into a buffer, forwarding each line to an optional sink."""

    def __init__(self, stream: IO[str], label: str, sink: Optional[LineSink] = None):
        super().__init__(daemon=True)
        self.stream = stream
        self.label = label
        self.sink = sink
        self.lines: List[str] = []

    def run(self) -> None:
        try:
            for line in iter(self.stream.readline, ""):
                self.lines.append(line)
                if self.sink is not None:
                    self.sink(self.label, line)
        except (OSError, ValueError):
            # pipe closed underneath us during teardown
            pass

    @property
    def text(self) -> str:
        return "".join(self.lines)


def run_process(
    command: Command,
    *,
    name: str,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    sink: Optional[LineSink] = None,
    grace: float = KILL_GRACE_SEC,
) -> ExecutionResult:
    """Run one external command to completion and capture its output.

    Raises:
        TaskTimeoutError: the command outlived ``timeout``; its group is killed
        OSError: the executable could not be started
    """
    started = time.monotonic()
    deadline = None if timeout is None else started + timeout
    with spawned(command, cwd=cwd, env=env, grace=grace) as proc:
        readers = [_PipeReader(proc.stdout, "stdout", sink), _PipeReader(proc.stderr, "stderr", sink)]
        for r in readers:
            r.start()
        try:
            rc = proc.wait(timeout=timeout)
            # Background children may still hold the pipes; they share the deadline
            for r in readers:
                r.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
                if r.is_alive():
                    raise subprocess.TimeoutExpired(command, timeout)
        except subprocess.TimeoutExpired:
            _terminate_group(proc, grace)
            for r in readers:
                r.join(timeout=grace)
            raise TaskTimeoutError(name, float(timeout or 0), format_diagnostics(readers[0].text, readers[1].text))
    return ExecutionResult(
        task=name,
        exit_code=rc,
        stdout=readers[0].text,
        stderr=readers[1].text,
        duration=time.monotonic() - started,
        command=display_command(command),
    )


# -----------------------------
# Confirmation gate
# -----------------------------

def confirm(prompt: str, stream: Optional[IO[str]] = None, out: Optional[IO[str]] = None,
            timeout: Optional[float] = None) -> bool:
    """Ask a yes/no question; only an explicit ``y``/``yes`` returns True.

    Empty input, end-of-input, any other answer and an expired ``timeout``
    all count as "no".
    """
    stream = stream if stream is not None else sys.stdin
    out = out if out is not None else sys.stdout
    out.write(f"{prompt} [y/N] ")
    out.flush()
    if timeout is not None:
        try:
            ready, _, _ = select.select([stream], [], [], timeout)
        except (AttributeError, OSError, ValueError):
            # no usable fileno (e.g. in-memory stream); read directly
            ready = [stream]
        if not ready:
            out.write("\n")
            logger.info("Confirmation prompt timed out")
            return False
    try:
        answer = stream.readline()
    except (EOFError, OSError):
        answer = ""
    return answer.strip().lower() in _AFFIRMATIVE


# -----------------------------
# Task runner
# -----------------------------

class TaskRunner:
    """Execute tasks of a TaskGraph in a given order.

    Public API:
      - TaskRunner(graph, publisher=None, confirm_fn=None, assume_yes=False,
                   dry_run=False, log_dir=None, echo=False, workdir=None,
                   confirm_timeout=None)
      - run(order, params) -> list[ExecutionResult]
      - results (property): results of the last run, including a failed one
      - artifacts (property): artifacts published during the last run
    """

    def __init__(
        self,
        graph,
        publisher=None,
        confirm_fn: Optional[Callable[[str], bool]] = None,
        *,
        assume_yes: bool = False,
        dry_run: bool = False,
        log_dir: Optional[Path] = None,
        echo: bool = False,
        workdir: Optional[Path] = None,
        kill_grace: float = KILL_GRACE_SEC,
        confirm_timeout: Optional[float] = None,
    ):
        self.graph = graph
        self.publisher = publisher
        self.confirm_timeout = confirm_timeout
        self._confirm = confirm_fn or self._prompt
        self.assume_yes = assume_yes
        self.dry_run = dry_run
        self.log_dir = Path(log_dir) if log_dir else None
        self.echo = echo
        self.workdir = Path(workdir) if workdir else Path.cwd()
        self.kill_grace = kill_grace
        self._results: List[ExecutionResult] = []
        self._artifacts: Dict[str, str] = {}

    @property
    def results(self) -> List[ExecutionResult]:
        return list(self._results)

    @property
    def artifacts(self) -> Dict[str, str]:
        return dict(self._artifacts)

    def run(self, order: List[str], params: Mapping[str, str]) -> List[ExecutionResult]:
        """Run ``order`` sequentially; the first failure aborts the rest."""
        self._results = []
        self._artifacts = {}
        confirmed = False
        for name in order:
            spec: TaskSpec = self.graph.get(name)
            values = ChainMap(self._artifacts, dict(params))
            try:
                command = render_command(spec.command, values, task=name)
                cwd = self._task_cwd(spec, values)
                env = {k: render_text(v, values, task=name) for k, v in spec.env.items()}

                if spec.destructive and not confirmed and not self.dry_run:
                    self._gate(spec)
                    confirmed = True

                if spec.skip_if_exists:
                    marker = Path(render_text(spec.skip_if_exists, values, task=name))
                    if not marker.is_absolute():
                        marker = cwd / marker
                    if marker.exists():
                        logger.info(f"[{name}] skipped: {marker} exists")
                        self._results.append(ExecutionResult(name, 0, "", "", 0.0, display_command(command), skipped=True))
                        continue

                if self.dry_run:
                    logger.info(f"[{name}] dry-run: {display_command(command)}")
                    self._results.append(ExecutionResult(name, 0, "", "", 0.0, display_command(command), skipped=True))
                    continue

                result = self._execute(spec, command, cwd, env)
                self._results.append(result)
                if result.exit_code not in spec.ok_exit_codes:
                    logger.error(f"[{name}] failed rc={result.exit_code}")
                    raise TaskFailedError(name, result.exit_code, format_diagnostics(result.stdout, result.stderr))
                logger.info(f"[{name}] done rc={result.exit_code} in {result.duration:.1f}s")

                if spec.publish:
                    self._publish(spec, result, cwd, values)
            except CisflowError as e:
                if e.task is None:
                    e.task = name
                raise
        return self.results

    def _task_cwd(self, spec: TaskSpec, values: Mapping[str, str]) -> Path:
        if not spec.cwd:
            return self.workdir
        p = Path(render_text(spec.cwd, values, task=spec.name))
        return p if p.is_absolute() else self.workdir / p

    def _prompt(self, prompt: str) -> bool:
        return confirm(prompt, timeout=self.confirm_timeout)

    def _gate(self, spec: TaskSpec) -> None:
        if self.assume_yes:
            logger.warning(f"[{spec.name}] destructive operation approved by --yes")
            return
        prompt = spec.confirm or DEFAULT_CONFIRM_PROMPT
        if not self._confirm(prompt):
            logger.warning(f"[{spec.name}] destructive operation declined")
            raise ConfirmationDeclinedError(spec.name)
        logger.info(f"[{spec.name}] destructive operation confirmed")

    def _execute(self, spec: TaskSpec, command: Command, cwd: Path, env: Dict[str, str]) -> ExecutionResult:
        logger.info(f"[{spec.name}] running: {display_command(command)} (cwd={cwd})")
        if self.log_dir is None:
            return run_process(command, name=spec.name, cwd=cwd, env=env, timeout=spec.timeout,
                               sink=self._echo_sink(None), grace=self.kill_grace)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / f"{spec.name}.log"
        with open(log_path, "w", encoding="utf-8") as fh:
            fh.write(f"$ {display_command(command)}\n")
            return run_process(command, name=spec.name, cwd=cwd, env=env, timeout=spec.timeout,
                               sink=self._echo_sink(fh), grace=self.kill_grace)

    def _echo_sink(self, fh: Optional[IO[str]]) -> Optional[LineSink]:
        if fh is None and not self.echo:
            return None
        lock = threading.Lock()

        def sink(label: str, line: str) -> None:
            with lock:
                if fh is not None:
                    fh.write(line)
                if self.echo:
                    target = sys.stderr if label == "stderr" else sys.stdout
                    target.write(line)
                    target.flush()

        return sink

    def _publish(self, spec: TaskSpec, result: ExecutionResult, cwd: Path, values: Mapping[str, str]) -> None:
        if self.publisher is None:
            raise PublishError("task publishes artifacts but no registry is configured", task=spec.name)
        for pub in spec.publish:
            if pub.file:
                path = Path(render_text(pub.file, values, task=spec.name))
                if not path.is_absolute():
                    path = cwd / path
                try:
                    text = path.read_text()
                except OSError as e:
                    raise ExtractionError(f"cannot read {path}: {e}", task=spec.name) from e
            else:
                text = result.stdout
            value = self.publisher.extract(text, pub.rule)
            key = render_text(pub.key, values, task=spec.name)
            artifact = self.publisher.publish(pub.artifact, value, key, overwrite=pub.overwrite)
            self._artifacts[artifact.name] = artifact.value
            logger.info(f"[{spec.name}] {artifact.name} = {artifact.value}")
