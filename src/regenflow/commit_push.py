from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging

from regenflow.config import ConfigError
from regenflow.git_ops import GitRepo, PushError, push_error
from regenflow.github_gateway import GitHubGateway, TreeEntry
from regenflow.models import ActionKind
from regenflow.observability import log_event
from regenflow.reports import MergedVersionReport
from regenflow.shell import CommandError


LOGGER = logging.getLogger("regenflow.commit_push")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CommitMessageInput:
    action: ActionKind
    openapi_doc_version: str = ""
    speakeasy_version: str = ""
    sources_only: bool = False
    enable_changelog: bool = False
    version_report: MergedVersionReport | None = None


def build_commit_message(request: CommitMessageInput) -> str:
    if request.action == "run-workflow":
        if request.sources_only:
            return f"ci: regenerated with Speakeasy CLI {request.speakeasy_version}"
        if request.enable_changelog and request.version_report is not None:
            section = request.version_report.commit_markdown_section()
            if section.strip():
                return section
        return (
            f"ci: regenerated with OpenAPI Doc {request.openapi_doc_version}, "
            f"Speakeasy CLI {request.speakeasy_version}"
        )
    if request.action in {"suggest", "finalize"}:
        return f"ci: suggestions for OpenAPI doc {request.openapi_doc_version}"
    raise ValueError(f"invalid action: {request.action}")


@dataclass
class CommitPushEngine:
    """Lands the worktree on a remote branch.

    Single-owner branches are force-pushed. Shared matrix branches are fetched,
    rebased and pushed without force, retrying a bounded number of times when the
    remote ref moved underneath us. Signed mode builds the commit through the
    GitHub git-data API so GitHub signs it.
    """

    repo: GitRepo
    gateway: GitHubGateway | None = None
    attempts: int = 3
    test_mode: bool = False
    clock: Callable[[], datetime] = field(default=_utc_now)

    def commit_and_push(
        self,
        branch: str,
        message: str,
        *,
        signed: bool = False,
        shared: bool = False,
        base_branch: str = "",
    ) -> str:
        if self.test_mode:
            log_event(LOGGER, "commit_skipped", branch=branch, reason="test_mode")
            return ""

        self.repo.stage(".")
        if not self.repo.has_changes():
            log_event(LOGGER, "commit_skipped", branch=branch, reason="no_changes")
            return ""

        if signed:
            return self._commit_signed(branch, message, base_branch=base_branch)

        sha = self.repo.commit(message, when=self.clock())
        if shared:
            self.rebase_and_push(branch)
        else:
            try:
                self.repo.push(branch, force=True)
            except CommandError as exc:
                raise push_error(exc, branch) from exc
        sha = self.repo.head_sha()
        log_event(LOGGER, "commit_pushed", branch=branch, sha=sha, shared=shared)
        return sha

    def rebase_and_push(self, branch: str) -> None:
        """Append local commits to ``branch`` using the remote ref as the concurrency token."""
        last_error: CommandError | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                self.repo.fetch(branch)
            except CommandError:
                log_event(LOGGER, "git_push_new_branch", branch=branch)
                try:
                    self.repo.push(branch, set_upstream=True)
                except CommandError as exc:
                    raise PushError(f"error pushing new branch {branch}: {exc}") from exc
                return

            try:
                self.repo.rebase(f"origin/{branch}")
            except CommandError as exc:
                raise PushError(f"error rebasing onto origin/{branch}: {exc}") from exc

            try:
                self.repo.push(branch)
            except CommandError as exc:
                last_error = exc
                log_event(
                    LOGGER,
                    "git_push_retry",
                    branch=branch,
                    attempt=attempt,
                    attempts=self.attempts,
                )
                continue
            return

        raise PushError(f"error pushing after {self.attempts} attempts: {last_error}")

    def _commit_signed(self, branch: str, message: str, *, base_branch: str) -> str:
        if self.gateway is None:
            raise ConfigError("signed commits require a GitHub token")

        ref = self.gateway.get_ref(branch)
        if ref is None:
            if not base_branch or base_branch == branch:
                raise ConfigError(
                    "the commit branch does not exist but `-base-branch` is the same as "
                    "`-commit-branch`"
                )
            base_ref = self.gateway.get_ref(base_branch)
            if base_ref is None:
                raise ConfigError(f"base branch {base_branch} does not exist")
            ref = self.gateway.create_ref(branch, base_ref.sha)

        entries = [
            TreeEntry(
                path=change.path,
                content=None if change.deleted else (self.repo.root / change.path).read_bytes(),
            )
            for change in self.repo.staged_changes()
        ]
        base_tree = self.gateway.get_commit_tree(ref.sha)
        tree_sha = self.gateway.create_tree(base_tree, entries)
        commit_sha = self.gateway.create_commit(message, tree_sha, [ref.sha])
        # A non-forced update only succeeds when the ref still points at our parent.
        self.gateway.update_ref(branch, commit_sha, force=False)

        self.repo.fetch(branch)
        self.repo.reset("--hard", commit_sha)
        log_event(LOGGER, "commit_pushed", branch=branch, sha=commit_sha, signed=True)
        return commit_sha
