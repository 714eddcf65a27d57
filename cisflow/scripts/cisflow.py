#!/usr/bin/env python3
"""
cisflow: CLI for hardened EKS image and cluster workflows

Commands:
  cisflow plan              # terraform plan for the base infrastructure
  cisflow apply             # terraform apply for the base infrastructure
  cisflow build-image       # build hardened images and publish their ids
  cisflow cluster-plan      # terraform plan for the EKS cluster
  cisflow cluster-apply     # terraform apply for the EKS cluster
  cisflow run-scan          # start an AWS Inspector CIS scan
  cisflow clean             # destroy everything (asks for confirmation)
  cisflow run-static-tests  # run the pattern's static tests
  cisflow help              # list entry points of the selected pattern
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from cisflow.core.configuration import builtin_patterns, resolve_pattern
from cisflow.core.controller import WorkflowController
from cisflow.core.errors import EXIT_FAILURE, EXIT_INTERRUPTED, EXIT_OK, CisflowError, ConfigurationError
from cisflow.utils.logging_config import setup_logging
from cisflow.utils.report import build_help_table, render_error, render_report

ENTRY_POINTS = (
    "plan",
    "apply",
    "build-image",
    "cluster-plan",
    "cluster-apply",
    "run-scan",
    "clean",
    "run-static-tests",
)

logger = logging.getLogger("cisflow")


def _default_pattern(workdir: Path) -> Optional[str]:
    # Priority: CISFLOW_PATTERN -> name of the working directory (patterns/<NAME>)
    env = os.environ.get("CISFLOW_PATTERN")
    if env:
        return env
    if workdir.name in builtin_patterns():
        return workdir.name
    return None


def _make_controller(args: argparse.Namespace) -> WorkflowController:
    workdir = Path(args.workdir).resolve()
    pattern = args.pattern or _default_pattern(workdir)
    if not pattern:
        raise ConfigurationError(
            "no workflow selected; pass --pattern (one of: "
            + ", ".join(builtin_patterns())
            + ", or a YAML file) or set CISFLOW_PATTERN"
        )
    return WorkflowController(
        resolve_pattern(pattern),
        assume_yes=args.yes,
        dry_run=args.dry_run,
        allow_fallback=args.allow_fallback,
        workdir=workdir,
        echo=not args.quiet,
        confirm_timeout=args.confirm_timeout,
    )


def cmd_run(args: argparse.Namespace, entry: str) -> int:
    setup_logging(level=args.log_level, log_file=args.log_file,
                  console_level="INFO" if args.verbose else "WARNING")
    controller: Optional[WorkflowController] = None
    try:
        controller = _make_controller(args)
        report = controller.execute(entry)
    except CisflowError as e:
        logger.error(e.describe())
        if controller is not None and controller.last_report is not None:
            render_report(controller.last_report)
        render_error(e)
        return e.exit_code
    except KeyboardInterrupt:
        logger.error(f"{entry} interrupted")
        print("Interrupted; in-flight command terminated.", file=sys.stderr)
        return EXIT_INTERRUPTED
    render_report(report)
    return EXIT_OK


def cmd_help(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    from rich.console import Console

    console = Console()
    try:
        controller = _make_controller(args)
    except ConfigurationError as e:
        parser.print_help()
        console.print(f"\n{e.message}")
        console.print("Built-in patterns: " + ", ".join(builtin_patterns()))
        return EXIT_OK
    except CisflowError as e:
        render_error(e)
        return e.exit_code
    console.print(build_help_table(controller))
    return EXIT_OK


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--pattern", help="Built-in pattern name or workflow YAML path (default: $CISFLOW_PATTERN or working directory name)")
    common.add_argument("--workdir", default=".", help="Directory the tools run in (default: current directory)")
    common.add_argument("--dry-run", action="store_true", default=False, help="Resolve parameters and print commands without running them")
    common.add_argument("--yes", action="store_true", default=False, help="Approve destructive operations without prompting")
    common.add_argument("--confirm-timeout", type=float, default=None, metavar="SEC", help="Treat an unanswered confirmation prompt as \"no\" after SEC seconds")
    common.add_argument("--allow-fallback", action="store_true", default=False, help="Proceed when a lookup fell back to its sentinel value")
    common.add_argument("--quiet", action="store_true", default=False, help="Do not echo tool output to the terminal")
    common.add_argument("--verbose", "-v", action="store_true", default=False, help="Show INFO logs on the console")
    common.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="INFO")
    common.add_argument("--log-file", default=None, help="Log file (default: cisflow_data/cisflow.log)")
    return common


def build_parser() -> argparse.ArgumentParser:
    common = _common_options()
    parser = argparse.ArgumentParser(prog="cisflow", description="Hardened EKS image and cluster workflows")
    sub = parser.add_subparsers(dest="cmd")
    helps = {
        "plan": "Run terraform plan",
        "apply": "Run terraform apply",
        "build-image": "Build hardened images and publish their identifiers",
        "cluster-plan": "Plan EKS cluster changes",
        "cluster-apply": "Apply EKS cluster changes",
        "run-scan": "Run a CIS scan using AWS Inspector",
        "clean": "Destroy infrastructure (with confirmation)",
        "run-static-tests": "Run static code analysis tests",
    }
    for entry in ENTRY_POINTS:
        p = sub.add_parser(entry, parents=[common], help=helps[entry])
        p.set_defaults(func=lambda a, _entry=entry: cmd_run(a, _entry))
    p_help = sub.add_parser("help", parents=[common], help="List entry points of the selected pattern")
    p_help.set_defaults(func=lambda a: cmd_help(a, parser))
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_FAILURE
    return int(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
