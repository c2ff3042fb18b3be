from __future__ import annotations

import base64
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
import logging
import shutil

from regenflow.config import AutomationConfig
from regenflow.observability import log_event, register_secret
from regenflow.shell import CommandError, run


LOGGER = logging.getLogger("regenflow.git_ops")

PROTECTED_BRANCH_HINT = (
    "\nThis is likely due to a branch protection rule. Please ensure that the branch is "
    "not protected (repo > settings > branches)"
)


class PushError(RuntimeError):
    pass


@dataclass(frozen=True)
class CommitInfo:
    sha: str
    author: str
    committer: str
    subject: str


@dataclass(frozen=True)
class StagedChange:
    status: str
    path: str

    @property
    def deleted(self) -> bool:
        return self.status.startswith("D")


def parse_commit_log(output: str) -> list[CommitInfo]:
    """Parse ``git log --pretty=format:%H%x09%an%x09%cn%x09%s`` output.

    Short lines are tolerated: missing committer/author fields stay empty.
    """
    commits: list[CommitInfo] = []
    for raw_line in output.strip().splitlines():
        line = raw_line.strip()
        if not line:
            continue
        parts = line.split("\t", 3)
        sha = parts[0]
        author = committer = ""
        subject = line
        if len(parts) >= 4:
            author, committer, subject = parts[1], parts[2], parts[3]
        elif len(parts) == 3:
            author, subject = parts[1], parts[2]
        elif len(parts) == 2:
            subject = parts[1]
        commits.append(CommitInfo(sha=sha, author=author, committer=committer, subject=subject))
    return commits


def push_error(exc: CommandError, branch: str) -> PushError:
    message = f"error pushing changes to {branch}: {exc.stderr.strip() or exc}"
    if "protected branch hook declined" in f"{exc.stderr}{exc}":
        message += PROTECTED_BRANCH_HINT
    return PushError(message)


class GitRepo:
    """Thin wrapper over the git CLI for one working tree."""

    def __init__(self, root: Path, automation: AutomationConfig | None = None) -> None:
        self.root = root
        self.automation = automation or AutomationConfig()

    def _git(self, *args: str, env: Mapping[str, str] | None = None) -> str:
        return run(["git", "-C", str(self.root), *args], env=env)

    def _identity_env(self, when: datetime | None = None) -> dict[str, str]:
        """Author and committer variables for every command that writes commits."""
        identity = self.automation
        env = {
            "GIT_AUTHOR_NAME": identity.bot_name,
            "GIT_AUTHOR_EMAIL": identity.bot_email,
            "GIT_COMMITTER_NAME": identity.bot_name,
            "GIT_COMMITTER_EMAIL": identity.bot_email,
        }
        if when is not None:
            env["GIT_AUTHOR_DATE"] = when.isoformat()
            env["GIT_COMMITTER_DATE"] = when.isoformat()
        return env

    def configure_auth(self, token: str, server_url: str = "https://github.com") -> None:
        """Rewrite HTTPS remotes so subprocess git calls authenticate with ``token``."""
        if not token:
            return
        register_secret(token)
        host = server_url.removeprefix("https://").removeprefix("http://").strip("/") or "github.com"
        authenticated = f"https://gen:{token}@{host}/"
        self._git("config", "--local", f"url.{authenticated}.insteadOf", f"https://{host}/")
        register_secret(base64.b64encode(f"gen:{token}".encode()).decode("ascii"))
        log_event(LOGGER, "git_auth_configured", host=host)

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").strip()

    def head_sha(self) -> str:
        return self.rev_parse("HEAD")

    def rev_parse(self, revision: str) -> str:
        return self._git("rev-parse", revision).strip()

    def fetch(self, *refspecs: str) -> None:
        log_event(LOGGER, "git_fetch", refspecs=",".join(refspecs))
        self._git("fetch", "origin", *refspecs)

    def checkout(self, branch: str) -> None:
        log_event(LOGGER, "git_checkout", branch=branch)
        self._git("checkout", branch)

    def create_branch(self, branch: str) -> None:
        log_event(LOGGER, "git_branch_created", branch=branch)
        self._git("checkout", "-b", branch)

    def reset_branch(self, branch: str, start_point: str) -> None:
        log_event(LOGGER, "git_branch_reset", branch=branch, start_point=start_point)
        self._git("checkout", "-B", branch, start_point)

    def reset(self, mode: str, revision: str) -> None:
        log_event(LOGGER, "git_reset", mode=mode, revision=revision)
        self._git("reset", mode, revision)

    def cherry_pick(self, sha: str) -> None:
        log_event(LOGGER, "git_cherry_pick", sha=sha)
        self._git("cherry-pick", sha, env=self._identity_env())

    def rebase(self, upstream: str) -> None:
        log_event(LOGGER, "git_rebase", upstream=upstream)
        self._git("rebase", upstream, env=self._identity_env())

    def merge(self, branch: str) -> None:
        log_event(LOGGER, "git_merge", branch=branch)
        try:
            self._git("merge", branch, env=self._identity_env())
        except CommandError:
            status = self._git("status", "--porcelain")
            log_event(LOGGER, "git_merge_failed", branch=branch, status=status)
            raise

    def stage(self, pathspec: str = ".") -> None:
        self._git("add", pathspec)

    def stage_all(self) -> None:
        self._git("add", "-A")

    def status_porcelain(self) -> str:
        return self._git("status", "--porcelain")

    def has_changes(self) -> bool:
        return bool(self.status_porcelain().strip())

    def staged_changes(self) -> list[StagedChange]:
        diff = self._git("diff", "--cached", "--name-status").strip()
        changes: list[StagedChange] = []
        for line in diff.splitlines():
            parts = line.split("\t")
            if len(parts) < 2:
                continue
            status = parts[0]
            if status.startswith("R") and len(parts) >= 3:
                changes.append(StagedChange(status="D", path=parts[1]))
                changes.append(StagedChange(status="A", path=parts[2]))
                continue
            changes.append(StagedChange(status=status, path=parts[-1]))
        return changes

    def commit(self, message: str, *, when: datetime | None = None) -> str:
        """Commit staged changes as the automation identity and return the new sha."""
        env = self._identity_env(when)
        log_event(LOGGER, "git_commit", has_message=bool(message.strip()))
        self._git("commit", "-m", message, env=env)
        return self.head_sha()

    def push(self, branch: str, *, force: bool = False, set_upstream: bool = False) -> None:
        argv = ["push"]
        if force:
            argv.append("--force")
        if set_upstream:
            argv.append("-u")
        argv.extend(["origin", branch])
        log_event(LOGGER, "git_push", branch=branch, force=force)
        try:
            self._git(*argv)
        except Exception as exc:  # noqa: BLE001
            log_event(LOGGER, "git_push_failed", branch=branch, error_type=type(exc).__name__)
            raise

    def delete_remote_branch(self, branch: str) -> None:
        log_event(LOGGER, "git_branch_deleted", branch=branch)
        self._git("push", "origin", f":refs/heads/{branch}")

    def log_range(self, revision_range: str) -> list[CommitInfo]:
        output = self._git("log", revision_range, "--pretty=format:%H%x09%an%x09%cn%x09%s")
        return parse_commit_log(output)

    def committed_files(self, revision_range: str) -> tuple[str, ...]:
        output = self._git("diff", "--name-only", revision_range).strip()
        return tuple(line for line in output.splitlines() if line.strip())

    def remove_path(self, path: str) -> None:
        target = self.root / path
        if target.is_dir():
            shutil.rmtree(target)
        elif target.exists():
            target.unlink()
