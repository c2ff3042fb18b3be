"""Consolidate parallel matrix worker branches into one squashed commit and PR.

Every step either succeeds or aborts the run; the base and target branches are
rebuilt from their remote tips each time, so a failed finalize is re-run from
the start.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import TypeVar

from regenflow.git_ops import GitRepo
from regenflow.models import PullRequest
from regenflow.observability import log_event
from regenflow.pr_reconciler import PRReconciler
from regenflow.prdescription import DescriptionInput
from regenflow.reports import REPORTS_DIR, MergedReports, ReportError, merge_reports_dir
from regenflow.run_context import RunContext, is_main_branch, sanitize_branch_name
from regenflow.shell import run_streaming


LOGGER = logging.getLogger("regenflow.fanout")

CHANGES_LOG_DIR = ".speakeasy/logs/changes"
FALLBACK_COMMIT_MESSAGE = "ci: regenerated via fanout workflow"

T = TypeVar("T")


class FanoutError(RuntimeError):
    pass


@dataclass(frozen=True)
class FanoutResult:
    base_sha: str
    squash_sha: str
    target_branch: str
    pull_request: PullRequest | None
    merged: MergedReports


def description_from_reports(ctx: RunContext, merged: MergedReports) -> DescriptionInput:
    return DescriptionInput(
        workflow_name=ctx.workflow_name,
        source_branch=ctx.source_branch,
        feature_branch=ctx.feature_branch,
        docs_generation=ctx.is_docs_generation,
        speakeasy_version=merged.speakeasy_version,
        manual_bump=merged.manual_bump,
        version_report=merged.version_report,
        linting_report_url=merged.linting_report_url,
        changes_report_url=merged.changes_report_url,
        openapi_change_summary=merged.openapi_change_summary,
    )


def _step(description: str, action: Callable[[], T]) -> T:
    try:
        return action()
    except Exception as exc:  # noqa: BLE001
        log_event(LOGGER, "fanout_step_failed", step=description, error_type=type(exc).__name__)
        raise FanoutError(f"failed to {description}: {exc}") from exc


@dataclass
class FanoutFinalizer:
    repo: GitRepo
    ctx: RunContext
    reconciler: PRReconciler
    sdk_regen_prefix: str = "speakeasy-sdk-regen"

    def finalize(self) -> FanoutResult:
        inputs = self.ctx.fanout
        base = inputs.base_branch or self.ctx.source_branch
        if not base:
            raise FanoutError("base branch is required")
        workers = inputs.worker_branches
        if not workers:
            raise FanoutError("at least one worker branch is required")

        reports_input = inputs.reports_dir or REPORTS_DIR
        reports_path = self.ctx.repo_root / self.ctx.resolve_path(reports_input)
        cleanup_paths = inputs.cleanup_paths or (reports_input, CHANGES_LOG_DIR)
        log_event(LOGGER, "fanout_started", base=base, workers=",".join(workers))

        _step(f"fetch base branch {base}", lambda: self.repo.fetch(base))
        _step(f"checkout base branch {base}", lambda: self.repo.checkout(base))
        _step(f"reset base branch {base}", lambda: self.repo.reset("--hard", f"origin/{base}"))
        base_sha = _step("resolve base commit", self.repo.head_sha)

        for worker in workers:
            _step(f"fetch worker branch {worker}", lambda: self.repo.fetch(f"refs/heads/{worker}"))
            worker_sha = _step(
                f"resolve worker branch {worker} head", lambda: self.repo.rev_parse("FETCH_HEAD")
            )
            _step(
                f"cherry-pick worker commit {worker_sha} from {worker}",
                lambda: self.repo.cherry_pick(worker_sha),
            )

        try:
            merged = merge_reports_dir(reports_path)
        except ReportError as exc:
            raise FanoutError(str(exc)) from exc
        description = description_from_reports(self.ctx, merged)

        script = inputs.post_generate_script
        if script:
            script_path = Path(self.ctx.resolve_path(script))
            if not script_path.is_absolute():
                script_path = self.ctx.repo_root / script_path
            _step(
                f"run post-generation script {script_path}",
                lambda: run_streaming(["bash", str(script_path)], cwd=self.ctx.repo_root),
            )

        _step(f"start squash from {base_sha}", lambda: self.repo.reset("--soft", base_sha))
        for cleanup in cleanup_paths:
            if not cleanup.strip():
                continue
            _step(
                f"remove cleanup path {cleanup}",
                lambda: self.repo.remove_path(self.ctx.resolve_path(cleanup.strip())),
            )
        _step("stage squashed changes", self.repo.stage_all)
        status = _step("inspect staged changes", self.repo.status_porcelain)
        if not status.strip():
            raise FanoutError("no staged changes found after fanout finalization")

        message = inputs.commit_message.strip()
        if not message:
            message = merged.version_report.commit_markdown_section().strip()
        if not message:
            message = FALLBACK_COMMIT_MESSAGE
        squash_sha = _step(
            "create squashed commit", lambda: self.repo.commit(message, when=self.ctx.invoked_at)
        )

        target = inputs.target_branch or self._resolve_target_branch(base)
        _step(
            f"checkout target branch {target}",
            lambda: self.repo.reset_branch(target, f"origin/{base}"),
        )
        _step(
            f"apply squashed commit {squash_sha} on {target}",
            lambda: self.repo.cherry_pick(squash_sha),
        )

        pull_request: PullRequest | None = None
        if self.ctx.is_test_mode:
            log_event(LOGGER, "fanout_push_skipped", target=target, reason="test_mode")
        else:
            _step(f"force push {target}", lambda: self.repo.push(target, force=True))
            existing = self.reconciler.gateway.find_pull_request_by_head(target)
            pull_request = self.reconciler.create_or_update_pr(target, description, existing)

        if inputs.cleanup_workers and not self.ctx.is_test_mode:
            self._delete_workers(workers, keep={target, base})

        log_event(
            LOGGER,
            "fanout_finished",
            target=target,
            squash_sha=squash_sha,
            pr_number=pull_request.number if pull_request else None,
        )
        return FanoutResult(
            base_sha=base_sha,
            squash_sha=squash_sha,
            target_branch=target,
            pull_request=pull_request,
            merged=merged,
        )

    def _resolve_target_branch(self, base: str) -> str:
        branch, _pr = self.reconciler.find_existing_pr("", "run-workflow")
        if branch:
            return branch
        source = self.ctx.source_branch or base
        if is_main_branch(source):
            return f"{self.sdk_regen_prefix}-{self.ctx.timestamp}"
        return f"{self.sdk_regen_prefix}-{sanitize_branch_name(source)}-{self.ctx.timestamp}"

    def _delete_workers(self, workers: tuple[str, ...], *, keep: set[str]) -> None:
        for worker in workers:
            if not worker or worker in keep:
                continue
            try:
                self.repo.delete_remote_branch(worker)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "worker_branch_delete_failed",
                    branch=worker,
                    error_type=type(exc).__name__,
                )
