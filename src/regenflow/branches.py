from __future__ import annotations

from dataclasses import dataclass, field
import logging

from regenflow.config import AutomationConfig, BranchPrefixes
from regenflow.git_ops import CommitInfo, GitRepo
from regenflow.models import ActionKind, Branch
from regenflow.observability import log_event
from regenflow.pr_reconciler import PRReconciler
from regenflow.run_context import RunContext, sanitize_branch_name
from regenflow.shell import CommandError


LOGGER = logging.getLogger("regenflow.branches")

_REMEDIATION_FOOTER = "\n\nAfter merging or closing, the action will create a new branch on the next run"


class ExternalChangesError(RuntimeError):
    """A generated branch carries commits that automation did not author."""

    def __init__(self, branch: str, pr_url: str = "") -> None:
        head = (
            f"external changes detected on branch {branch}. The action cannot proceed because "
            "non-automated commits were pushed to this branch.\n\nPlease either:\n"
        )
        if pr_url:
            steps = f"- Merge the PR: {pr_url}\n- Close the PR and delete the branch"
        else:
            steps = "- Merge the associated PR for this branch\n- Close the PR and delete the branch"
        super().__init__(head + steps + _REMEDIATION_FOOTER)
        self.branch = branch
        self.pr_url = pr_url


def is_automation_commit(commit: CommitInfo, automation: AutomationConfig) -> bool:
    return automation.is_automation(commit.author) and automation.is_automation(commit.committer)


def find_non_ci_commits(commits: list[CommitInfo], automation: AutomationConfig) -> list[str]:
    """Shas of commits a human pushed: not automation-authored and not ``ci``-prefixed."""
    out: list[str] = []
    for commit in commits:
        subject = commit.subject.strip()
        if not subject:
            continue
        if is_automation_commit(commit, automation):
            continue
        if not subject.lower().startswith("ci"):
            out.append(commit.sha)
    return out


def should_delete_branch(branch: Branch, *, succeeded: bool, direct: bool = False) -> bool:
    """Feature and shared branches always survive the run.

    An ephemeral branch goes once direct mode has merged it or the run failed; in pr
    mode it backs the open PR and is kept.
    """
    if branch.kind != "ephemeral":
        return False
    return direct or not succeeded


def new_branch_name(prefix: str, ctx: RunContext) -> str:
    if ctx.on_main_branch:
        return f"{prefix}-{ctx.timestamp}"
    return f"{prefix}-{sanitize_branch_name(ctx.source_branch)}-{ctx.timestamp}"


@dataclass
class BranchLifecycleManager:
    repo: GitRepo
    ctx: RunContext
    prefixes: BranchPrefixes = field(default_factory=BranchPrefixes)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    reconciler: PRReconciler | None = None

    def family_prefix(self, action: ActionKind) -> str:
        if self.ctx.is_docs_generation:
            return self.prefixes.docs_regen
        if action in {"suggest", "finalize"}:
            return self.prefixes.suggestion
        if action == "fanout-finalize":
            return self.prefixes.fanout
        return self.prefixes.sdk_regen

    def resolve(self, requested: str, action: ActionKind, *, recover: bool = True) -> Branch:
        if self.ctx.branch_name:
            return self._resolve_shared(self.ctx.branch_name)

        if self.ctx.feature_branch and requested in {"", self.ctx.feature_branch}:
            return self._resolve_feature(self.ctx.feature_branch)

        name = requested
        if not name and recover and self.reconciler is not None and self.ctx.mode == "pr":
            name, _pr = self.reconciler.find_existing_pr("", action)

        if name:
            return self._resolve_ephemeral(name, action)

        name = new_branch_name(self.family_prefix(action), self.ctx)
        self.repo.create_branch(name)
        log_event(LOGGER, "branch_resolved", branch=name, kind="ephemeral", created=True)
        return Branch(name=name, kind="ephemeral")

    def checkout(self, name: str) -> None:
        self.repo.fetch(f"refs/heads/{name}:refs/heads/{name}")
        self.repo.checkout(name)
        log_event(LOGGER, "branch_resolved", branch=name, kind="existing", created=False)

    def delete(self, branch: Branch) -> None:
        """Best-effort removal of a remote branch this run owned."""
        try:
            self.repo.delete_remote_branch(branch.name)
        except Exception as exc:  # noqa: BLE001
            log_event(LOGGER, "branch_delete_failed", branch=branch.name, error_type=type(exc).__name__)

    def _checkout_existing(self, name: str) -> bool:
        try:
            self.repo.fetch(f"refs/heads/{name}:refs/heads/{name}")
            self.repo.checkout(name)
        except CommandError:
            log_event(LOGGER, "branch_checkout_failed", branch=name)
            return False
        return True

    def _checkout_or_create(self, name: str) -> bool:
        if self._checkout_existing(name):
            return True
        self.repo.create_branch(name)
        return False

    def _resolve_shared(self, name: str) -> Branch:
        # Parallel matrix jobs append to this branch, so it is never reset.
        existed = self._checkout_or_create(name)
        log_event(LOGGER, "branch_resolved", branch=name, kind="shared", created=not existed)
        return Branch(name=name, kind="shared")

    def _resolve_feature(self, name: str) -> Branch:
        existed = self._checkout_or_create(name)
        log_event(LOGGER, "branch_resolved", branch=name, kind="feature", created=not existed)
        return Branch(name=name, kind="feature")

    def _resolve_ephemeral(self, name: str, action: ActionKind) -> Branch:
        default_branch = self._default_branch()
        if not self._checkout_existing(name):
            self.repo.create_branch(name)
            log_event(LOGGER, "branch_resolved", branch=name, kind="ephemeral", created=True)
            return Branch(name=name, kind="ephemeral")

        if default_branch:
            commits = self.repo.log_range(f"origin/{default_branch}..{name}")
            foreign = find_non_ci_commits(commits, self.automation)
            if foreign:
                log_event(LOGGER, "external_changes_detected", branch=name, count=len(foreign))
                raise ExternalChangesError(name, self._owning_pr_url(name, action))
            try:
                self.repo.reset("--hard", f"origin/{default_branch}")
            except CommandError:
                log_event(LOGGER, "branch_reset_failed", branch=name, base=default_branch)

        log_event(LOGGER, "branch_resolved", branch=name, kind="ephemeral", created=False)
        return Branch(name=name, kind="ephemeral")

    def _default_branch(self) -> str:
        try:
            return self.repo.current_branch()
        except CommandError:
            log_event(LOGGER, "default_branch_unknown")
            return ""

    def _owning_pr_url(self, name: str, action: ActionKind) -> str:
        if self.reconciler is None:
            return ""
        try:
            _head, pr = self.reconciler.find_existing_pr(name, action)
        except Exception as exc:  # noqa: BLE001
            log_event(LOGGER, "pr_lookup_failed", branch=name, error_type=type(exc).__name__)
            return ""
        return pr.html_url if pr is not None else ""
