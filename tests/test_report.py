import io

from rich.console import Console

from cisflow.core.controller import RunReport
from cisflow.core.errors import TaskFailedError
from cisflow.core.models import Artifact, ExecutionResult, Resolution, ResolutionStatus
from cisflow.utils.report import render_error, render_report


def _console():
    return Console(file=io.StringIO(), width=200, color_system=None)


def test_report_marks_failed_and_unrun_tasks():
    report = RunReport(
        entry="build-image",
        order=["prepare", "build", "publish"],
        results=[
            ExecutionResult("prepare", 0, "", "", 1.0, "make prepare"),
            ExecutionResult("build", 2, "", "", 3.0, "make build"),
        ],
        resolutions={"vpc_id": Resolution("vpc_id", "ERROR_GETTING_VPC", ResolutionStatus.FALLBACK, "rc 255")},
        failed_task="build",
    )
    console = _console()
    render_report(report, console)
    out = console.file.getvalue()
    assert "failed" in out
    assert "not run" in out
    assert "ERROR_GETTING_VPC" in out


def test_report_lists_published_artifacts():
    report = RunReport(
        entry="build-image",
        order=["build"],
        results=[ExecutionResult("build", 0, "", "", 1.0, "make")],
        artifacts=[Artifact("Level1AmiId", "ami-0123", "/cis_ami/demo/level_1/ami_id")],
    )
    console = _console()
    render_report(report, console)
    out = console.file.getvalue()
    assert "ami-0123" in out and "/cis_ami/demo/level_1/ami_id" in out


def test_error_shows_task_and_diagnostics():
    console = _console()
    render_error(TaskFailedError("build", 2, "--- stderr (tail) ---\nno space left"), console)
    out = console.file.getvalue()
    assert "task=build" in out
    assert "no space left" in out
