import io
import os

import pytest

from cisflow.scripts.cisflow import build_parser, main

WORKFLOW = """
name: demo
entry_points:
  plan: plan
  run-static-tests: lint
  run-scan: scan
  clean: destroy
tasks:
  - name: plan
    command: [sh, -c, "echo {name} > plan.txt; exit 2"]
    ok_exit_codes: [0, 2]
  - name: lint
    command: [sh, -c, "exit 5"]
  - name: scan
    command: [sh, -c, "exit 3"]
  - name: destroy
    destructive: true
    command: [sh, -c, "touch destroyed.txt"]
"""


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    path = tmp_path / "demo.yaml"
    path.write_text(WORKFLOW)
    monkeypatch.setenv("CISFLOW_NAME", "cli-demo")
    monkeypatch.delenv("CISFLOW_PATTERN", raising=False)
    common = ["--pattern", str(path), "--workdir", str(tmp_path), "--quiet",
              "--log-file", str(tmp_path / "cisflow.log")]
    return tmp_path, common


def test_parser_knows_every_entry_point():
    parser = build_parser()
    for cmd in ("plan", "apply", "build-image", "cluster-plan", "cluster-apply", "run-scan", "clean",
                "run-static-tests", "help"):
        args = parser.parse_args([cmd, "--dry-run"])
        assert args.cmd == cmd
        assert args.dry_run is True


def test_no_command_prints_help():
    assert main([]) == 1


def test_successful_entry_returns_zero(cli_env):
    tmp_path, common = cli_env
    assert main(["plan", *common]) == 0
    assert (tmp_path / "plan.txt").read_text().strip() == "cli-demo"
    assert (tmp_path / "cisflow.log").exists()


def test_failed_task_exit_code_propagates(cli_env):
    _, common = cli_env
    assert main(["run-static-tests", *common]) == 5


def test_destroy_without_confirmation_is_declined(cli_env, monkeypatch):
    tmp_path, common = cli_env
    monkeypatch.setattr("sys.stdin", io.StringIO(""))
    assert main(["clean", *common]) == 3
    assert not (tmp_path / "destroyed.txt").exists()


def test_destroy_with_yes(cli_env):
    tmp_path, common = cli_env
    assert main(["clean", "--yes", *common]) == 0
    assert (tmp_path / "destroyed.txt").exists()


def test_help_lists_entry_points(cli_env, capsys):
    _, common = cli_env
    assert main(["help", *common]) == 0
    out = capsys.readouterr().out
    assert "plan" in out and "clean" in out


def test_help_without_pattern_lists_builtins(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("CISFLOW_PATTERN", raising=False)
    assert main(["help", "--workdir", str(tmp_path)]) == 0
    assert "CIS_AL2023" in capsys.readouterr().out


def test_unknown_pattern_fails(tmp_path, monkeypatch):
    monkeypatch.delenv("CISFLOW_PATTERN", raising=False)
    assert main(["plan", "--pattern", "NOPE", "--workdir", str(tmp_path),
                 "--log-file", str(tmp_path / "cisflow.log")]) == 1


def test_tool_exiting_with_declined_code_is_a_generic_failure(cli_env):
    _, common = cli_env
    assert main(["run-scan", *common]) == 1


def test_unanswered_confirmation_times_out(cli_env, monkeypatch):
    tmp_path, common = cli_env
    read_fd, write_fd = os.pipe()
    stream = os.fdopen(read_fd)
    monkeypatch.setattr("sys.stdin", stream)
    try:
        assert main(["clean", "--confirm-timeout", "0.3", *common]) == 3
    finally:
        stream.close()
        os.close(write_fd)
    assert not (tmp_path / "destroyed.txt").exists()
