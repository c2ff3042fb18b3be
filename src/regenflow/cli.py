from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import cast

from regenflow.actions import ActionDeps, run_action
from regenflow.config import ConfigError, EngineConfig, load_config
from regenflow.fanout import description_from_reports
from regenflow.models import ACTION_KINDS, ActionKind
from regenflow.observability import configure_logging, log_event, register_secret
from regenflow.prdescription import describe
from regenflow.reports import REPORTS_DIR, merge_reports_dir
from regenflow.run_context import RunContext


LOGGER = logging.getLogger("regenflow.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="regenflow")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Run the action selected by INPUT_ACTION (or --action)"
    )
    run_parser.add_argument("--config", type=Path, default=None)
    run_parser.add_argument(
        "--action",
        choices=ACTION_KINDS,
        default=None,
        help="Override INPUT_ACTION",
    )
    _add_verbose(run_parser)

    pr_parser = subparsers.add_parser(
        "pr-description",
        help="Build the PR title and body from per-target generation reports",
    )
    pr_parser.add_argument("--config", type=Path, default=None)
    pr_parser.add_argument("--reports-dir", type=str, default=REPORTS_DIR)
    pr_parser.add_argument(
        "--branch",
        type=str,
        default="",
        help="Head branch of the PR to create or update",
    )
    pr_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the description as JSON without touching GitHub",
    )
    _add_verbose(pr_parser)

    return parser


def _add_verbose(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        default=None,
        help="Log runtime events to stderr (low: milestones only)",
    )


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        ctx = RunContext.from_environ()
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    configure_logging(args.verbose or ctx.debug)
    for secret in (ctx.github_token, ctx.pr_creation_token, ctx.api_key):
        register_secret(secret)

    try:
        config = load_config(args.config)
        if args.command == "run":
            _cmd_run(ctx, config, action=args.action)
            return
        if args.command == "pr-description":
            _cmd_pr_description(
                ctx,
                config,
                reports_dir=str(args.reports_dir),
                branch=str(args.branch),
                dry_run=bool(args.dry_run),
            )
            return
        raise RuntimeError(f"Unknown command: {args.command}")
    except Exception as exc:  # noqa: BLE001
        log_event(LOGGER, "action_failed", command=args.command, error_type=type(exc).__name__)
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


def _cmd_run(ctx: RunContext, config: EngineConfig, *, action: str | None) -> None:
    if action:
        ctx = ctx.with_action(cast(ActionKind, action))
    deps = ActionDeps.build(ctx, config)
    if not ctx.is_test_mode:
        deps.repo.configure_auth(ctx.github_token, ctx.server_url)
    run_action(deps)


def _cmd_pr_description(
    ctx: RunContext,
    config: EngineConfig,
    *,
    reports_dir: str,
    branch: str,
    dry_run: bool,
) -> None:
    merged = merge_reports_dir(ctx.repo_root / ctx.resolve_path(reports_dir))
    description = description_from_reports(ctx, merged)
    if dry_run:
        result = describe(description)
        print(json.dumps({"title": result.title, "body": result.body}, indent=2))
        return

    if not branch:
        raise ConfigError("--branch is required unless --dry-run is given")
    deps = ActionDeps.build(ctx, config)
    pr = deps.reconciler.find_or_create(branch, "run-workflow", description)
    print(pr.html_url)

