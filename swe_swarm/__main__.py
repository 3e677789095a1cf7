"""CLI for swe-swarm.

Usage:
    swe-swarm epic EPIC_ID --plan PLAN [OPTIONS]       Run an epic's issue waves
    swe-swarm project PROJECT_ID --plan PLAN --plan-dir DIR [OPTIONS]
                                                       Run a project's epic waves
    swe-swarm status RUN_ID [--state-dir DIR]          Show a persisted run

Run options:
    --resume            Continue the existing run state
    --force             Take over a lock held by a live process (kills it)
    --fresh             Discard existing state and start over
    --dry-run           Validate and print the plan without executing
    --max-retries N     Attempts per item before it stays failed
    -j, --jobs N        Maximum parallel items (0 = unbounded)
    --timeout MINUTES   Per-item timeout
    --agent-cmd CMD     Command run per issue; {id} is the issue number
    --config PATH       JSON or YAML config file

Exit status: 0 success, 1 partial failure, 2 fatal error, 3 setup error,
130 interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shlex
import sys
from typing import Sequence

from pydantic import ValidationError

from swe_swarm.app import epic_run_id, load_config, project_run_id, run_epic, run_project
from swe_swarm.exceptions import InvalidPlan, LockHeld, StateError
from swe_swarm.execution.plan import describe_plan, load_plan_file, sequential_plan
from swe_swarm.execution.report import render_report, summarize
from swe_swarm.execution.schemas import (
    ExecutionConfig,
    ExecutionPlan,
    RunKind,
    RunOutcome,
    RunState,
)
from swe_swarm.execution.state_store import StateStore

logger = logging.getLogger("swe_swarm")

EXIT_SETUP_ERROR = 3

EXIT_CODES: dict[RunOutcome, int] = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.PARTIAL: 1,
    RunOutcome.FATAL: 2,
    RunOutcome.INTERRUPTED: 130,
}

DEFAULT_AGENT_CMD = "swarm {id}"


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--plan", help="Plan document (JSON or YAML)")
    parser.add_argument("--resume", action="store_true", help="Continue the existing run state")
    parser.add_argument("--force", action="store_true", help="Override a lock held by a live process")
    parser.add_argument("--fresh", action="store_true", help="Discard existing state before starting")
    parser.add_argument("--dry-run", action="store_true", help="Print the plan without executing")
    parser.add_argument("--max-retries", type=int, default=None, help="Attempts per item")
    parser.add_argument("-j", "--jobs", type=int, default=None, help="Max parallel items (0 = unbounded)")
    parser.add_argument("--timeout", type=float, default=None, help="Per-item timeout in minutes")
    parser.add_argument(
        "--agent-cmd",
        default=DEFAULT_AGENT_CMD,
        help=f"Command run per issue, {{id}} is substituted (default: {DEFAULT_AGENT_CMD!r})",
    )
    parser.add_argument("--cwd", default=None, help="Working directory for agent commands")
    parser.add_argument("--config", default=None, help="JSON or YAML config file")
    parser.add_argument("--state-dir", default=None, help="State directory (default: $SWE_SWARM_STATE_DIR or .swarm)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="swe-swarm",
        description="Wave-based orchestration of autonomous agent runs",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    epic_parser = subparsers.add_parser("epic", help="Run the issue waves of one epic")
    epic_parser.add_argument("epic_id", help="Epic identifier")
    epic_parser.add_argument(
        "--issues",
        default=None,
        help="Comma-separated issue ids run one per wave when no --plan is given",
    )
    _add_run_options(epic_parser)

    project_parser = subparsers.add_parser("project", help="Run the epic waves of a project")
    project_parser.add_argument("project_id", help="Project identifier")
    project_parser.add_argument(
        "--epics",
        default=None,
        help="Comma-separated epic ids run one per wave when no --plan is given",
    )
    project_parser.add_argument(
        "--plan-dir",
        default=".",
        help="Directory holding epic-<id>.json issue plans (default: current dir)",
    )
    _add_run_options(project_parser)

    status_parser = subparsers.add_parser("status", help="Show the state of a run")
    status_parser.add_argument("run_id", help="Run identifier, e.g. epic-42")
    status_parser.add_argument("--state-dir", default=None, help="State directory")
    status_parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        parser.exit(2)
    return args


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.setLevel(level)


def _attach_run_log(path: str) -> logging.Handler:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logging.getLogger().addHandler(handler)
    return handler


def _split_ids(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip().lstrip("#") for v in value.split(",") if v.strip()]


def _build_config(args: argparse.Namespace, kind: RunKind) -> ExecutionConfig:
    return load_config(
        args.config,
        kind,
        max_retries=args.max_retries,
        max_parallel=args.jobs,
        item_timeout_seconds=args.timeout * 60 if args.timeout is not None else None,
        state_dir=args.state_dir,
    )


def _resolve_plan(
    args: argparse.Namespace,
    store: StateStore,
    run_id: str,
    fallback_ids: list[str],
) -> ExecutionPlan | None:
    if args.plan:
        return load_plan_file(args.plan)
    if fallback_ids:
        return sequential_plan(fallback_ids)
    if args.resume:
        return store.load_plan(run_id)
    raise InvalidPlan("a plan is required (--plan, or an id list for a sequential plan)")


def _print_header(title: str, run_id: str, config: ExecutionConfig) -> None:
    print()
    print("=" * 60)
    print(f"swe-swarm {title}: {run_id}")
    print("=" * 60)
    print(f"  State dir:    {config.state_dir}")
    print(f"  Max retries:  {config.max_retries}")
    print(f"  Max parallel: {config.max_parallel or 'unbounded'}")
    timeout = f"{int(config.item_timeout_seconds)}s" if config.item_timeout_seconds else "none"
    print(f"  Item timeout: {timeout}")
    print()


def _print_report(markdown: str, state: RunState) -> None:
    print()
    print(markdown)


def _exit_code(state: RunState) -> int:
    return EXIT_CODES[summarize(state).outcome]


async def _run(args: argparse.Namespace) -> int:
    kind = RunKind.EPIC if args.command == "epic" else RunKind.PROJECT
    config = _build_config(args, kind)
    store = StateStore(config.state_dir)

    if kind == RunKind.EPIC:
        run_id = epic_run_id(args.epic_id)
        plan = _resolve_plan(args, store, run_id, _split_ids(args.issues))
    else:
        run_id = project_run_id(args.project_id)
        plan = _resolve_plan(args, store, run_id, _split_ids(args.epics))

    _print_header(args.command, run_id, config)
    if plan is not None:
        print(describe_plan(plan, max_parallel=config.max_parallel or None))
        print()

    if args.dry_run:
        if plan is None:
            raise InvalidPlan(f"no stored plan for run {run_id!r}")
        print("Dry run: plan is valid, nothing executed")
        return 0

    handler = _attach_run_log(store.log_path(run_id))
    try:
        command = shlex.split(args.agent_cmd)
        if kind == RunKind.EPIC:
            state = await run_epic(
                args.epic_id,
                plan,
                command,
                config=config,
                cwd=args.cwd,
                resume=args.resume,
                force=args.force,
                fresh=args.fresh,
                report_fn=_print_report,
            )
        else:
            state = await run_project(
                args.project_id,
                plan,
                command,
                plan_dir=args.plan_dir,
                config=config,
                epic_config=_epic_config(args, config),
                cwd=args.cwd,
                resume=args.resume,
                force=args.force,
                fresh=args.fresh,
                report_fn=_print_report,
            )
    finally:
        logging.getLogger().removeHandler(handler)
        handler.close()

    return _exit_code(state)


def _epic_config(args: argparse.Namespace, project_config: ExecutionConfig) -> ExecutionConfig:
    """Epic-level config for nested runs: the file's ``epic:`` section, same state dir."""
    return load_config(args.config, RunKind.EPIC, state_dir=project_config.state_dir)


def _status(args: argparse.Namespace) -> int:
    store = StateStore(args.state_dir or ExecutionConfig().state_dir)
    state = store.load(args.run_id)
    plan = store.load_plan(args.run_id)
    print(render_report(state, plan))
    return _exit_code(state)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI."""
    args = _parse_args(argv)
    _configure_logging(args.verbose)

    try:
        if args.command == "status":
            return _status(args)
        return asyncio.run(_run(args))
    except (LockHeld, InvalidPlan, StateError) as e:
        logger.error("%s", e)
        return EXIT_SETUP_ERROR
    except (ValidationError, ValueError, OSError) as e:
        logger.error("Setup failed: %s", e)
        return EXIT_SETUP_ERROR
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_CODES[RunOutcome.INTERRUPTED]


if __name__ == "__main__":
    sys.exit(main())
