"""CLI entrypoint for the ralph loop."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from .cleanup import INTERRUPT_EXIT_CODE, CleanupHandler
from .config import RunConfig, build_config, load_config_file, resolve_config_path
from .console import configure_logging
from .engines import get_engine
from .errors import LedgerError, PreflightError, RunInterrupted
from .gitops import BranchManager, _gh_available
from .ledger import BacklogLedger, ProgressLog
from .orchestrator import Orchestrator

VERSION = "2.0.0"

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph-loop",
        description="Run an AI coding agent over a feature breakdown until every task is checked off.",
    )
    parser.add_argument("feature", nargs="?", help="feature name under the plans directory")
    parser.add_argument("--version", action="version", version=f"ralph-loop {VERSION}")

    engines = parser.add_argument_group("engine").add_mutually_exclusive_group()
    engines.add_argument("--claude", dest="engine", action="store_const", const="claude", help="use Claude Code (default)")
    engines.add_argument("--opencode", dest="engine", action="store_const", const="opencode", help="use OpenCode")
    engines.add_argument("--cursor", "--agent", dest="engine", action="store_const", const="cursor", help="use Cursor agent")
    engines.add_argument("--codex", dest="engine", action="store_const", const="codex", help="use Codex CLI")
    parser.add_argument("--engine-command", default=None, help="override the engine executable")

    workflow = parser.add_argument_group("workflow")
    workflow.add_argument("--no-tests", "--skip-tests", dest="skip_tests", action="store_const", const=True, default=None)
    workflow.add_argument("--no-lint", "--skip-lint", dest="skip_lint", action="store_const", const=True, default=None)
    workflow.add_argument("--fast", action="store_true", help="skip both tests and linting")

    execution = parser.add_argument_group("execution")
    execution.add_argument("--max-iterations", type=int, default=None, help="stop after N iterations (0 = unlimited)")
    execution.add_argument("--max-retries", type=int, default=None, help="attempts per task (default: 3)")
    execution.add_argument("--retry-delay", type=float, default=None, help="seconds between attempts (default: 5)")
    execution.add_argument("--dry-run", action="store_const", const=True, default=None, help="print the prompt without running")
    execution.add_argument("--parallel", action="store_const", const=True, default=None)
    execution.add_argument("--max-parallel", type=int, default=None)

    git = parser.add_argument_group("git branches")
    git.add_argument("--branch-per-task", action="store_const", const=True, default=None)
    git.add_argument("--base-branch", default=None, help="base branch (default: current branch)")
    git.add_argument("--create-pr", action="store_const", const=True, default=None, help="open a PR per task (requires gh)")
    git.add_argument("--draft-pr", action="store_const", const=True, default=None)

    other = parser.add_argument_group("other")
    other.add_argument("--config", default=None, help="YAML or JSON config file")
    other.add_argument("--plans-dir", default=None, help="directory holding feature plans (default: plans)")
    other.add_argument("--no-progress", dest="show_progress", action="store_const", const=False, default=None)
    other.add_argument("-v", "--verbose", action="store_const", const=True, default=None)
    return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {
        "engine": args.engine,
        "engine_command": args.engine_command,
        "skip_tests": args.skip_tests,
        "skip_lint": args.skip_lint,
        "max_iterations": args.max_iterations,
        "max_retries": args.max_retries,
        "retry_delay": args.retry_delay,
        "dry_run": args.dry_run,
        "parallel": args.parallel,
        "max_parallel": args.max_parallel,
        "branch_per_task": args.branch_per_task,
        "base_branch": args.base_branch,
        "create_pr": args.create_pr,
        "draft_pr": args.draft_pr,
        "show_progress": args.show_progress,
        "verbose": args.verbose,
        "plans_dir": Path(args.plans_dir) if args.plans_dir else None,
    }
    if args.fast:
        overrides["skip_tests"] = True
        overrides["skip_lint"] = True
    if overrides["draft_pr"]:
        overrides["create_pr"] = True
    if overrides["create_pr"]:
        overrides["branch_per_task"] = True
    return overrides


def preflight(config: RunConfig) -> None:
    """Check every precondition the loop needs; raise ``PreflightError`` on the first miss."""
    plans = config.workdir / config.plans_dir
    if not plans.is_dir():
        raise PreflightError(f"{config.plans_dir}/ directory not found")
    if not config.feature_dir.is_dir():
        raise PreflightError(f"Feature directory not found: {config.feature_dir}")
    if not config.breakdown_file.is_file():
        raise PreflightError(f"breakdown.md not found in {config.feature_dir}")

    if not config.dry_run:
        get_engine(config.engine, config.engine_command).ensure_available()
    if config.create_pr and not _gh_available():
        raise PreflightError("GitHub CLI (gh) is required for --create-pr. Install from https://cli.github.com/")


def main(argv: list[str] | None = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=bool(args.verbose))
    if not args.feature:
        parser.print_usage(sys.stderr)
        logger.error("Feature name required")
        return 1

    try:
        config_path = resolve_config_path(args.config)
        file_values = load_config_file(config_path) if config_path else {}
        config = build_config(args.feature, file_values, _overrides(args))
        configure_logging(verbose=config.verbose)
        preflight(config)
        ProgressLog(config.progress_file).ensure(config.feature)
    except (PreflightError, LedgerError) as err:
        logger.error("%s", err)
        return 1

    branches = BranchManager(
        config.workdir,
        enabled=config.branch_per_task,
        base_branch=config.base_branch,
        create_pr=config.create_pr,
        draft_pr=config.draft_pr,
    )
    if config.branch_per_task:
        branches.resolve_base_branch()

    try:
        with CleanupHandler(config.workdir) as cleanup:
            orchestrator = Orchestrator(
                config,
                ledger=BacklogLedger(config.breakdown_file),
                branches=branches,
                cleanup=cleanup,
            )
            return orchestrator.run()
    except (PreflightError, LedgerError) as err:
        logger.error("%s", err)
        return 1
    except (RunInterrupted, KeyboardInterrupt):
        return INTERRUPT_EXIT_CODE


if __name__ == "__main__":
    raise SystemExit(main())
