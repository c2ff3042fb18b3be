from __future__ import annotations

import shutil
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import cast

import pytest

from regenflow.config import AutomationConfig
from regenflow.fanout import (
    FALLBACK_COMMIT_MESSAGE,
    FanoutError,
    FanoutFinalizer,
    description_from_reports,
)
from regenflow.git_ops import GitRepo
from regenflow.github_gateway import GitHubGateway
from regenflow.models import Label, PullRequest
from regenflow.pr_reconciler import PRReconciler
from regenflow.reports import (
    MergedVersionReport,
    TargetGenerationReport,
    VersionReport,
    merge_reports_dir,
    write_report,
)
from regenflow.run_context import FanoutInputs, RunContext
from regenflow.shell import CommandError, run


NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)
REPORTS = ".speakeasy/reports"


class TreeRepo:
    """Snapshot-per-commit fake: each commit maps to (parent, files)."""

    def __init__(self) -> None:
        self.commits: dict[str, tuple[str, dict[str, str]]] = {"b0": ("", {"README.md": "hi"})}
        self.remote: dict[str, str] = {"main": "b0"}
        self.head = ""
        self.worktree: dict[str, str] = {}
        self.fetched = ""
        self.counter = 0
        self.messages: dict[str, str] = {}
        self.deleted: list[str] = []
        self.pushed: list[tuple[str, bool]] = []

    def add_worker(self, branch: str, files: dict[str, str]) -> None:
        snapshot = dict(self.commits["b0"][1])
        snapshot.update(files)
        self.commits[branch + "-sha"] = ("b0", snapshot)
        self.remote[branch] = branch + "-sha"

    def _new_sha(self) -> str:
        self.counter += 1
        return f"c{self.counter}"

    def fetch(self, *refspecs: str) -> None:
        name = refspecs[0].removeprefix("refs/heads/")
        if name not in self.remote:
            raise CommandError(f"couldn't find remote ref {name}", argv=["git"], exit_code=128)
        self.fetched = self.remote[name]

    def checkout(self, branch: str) -> None:
        pass

    def reset(self, mode: str, revision: str) -> None:
        sha = self.remote[revision.removeprefix("origin/")] if revision.startswith("origin/") else revision
        self.head = sha
        if mode == "--hard":
            self.worktree = dict(self.commits[sha][1])

    def head_sha(self) -> str:
        return self.head

    def rev_parse(self, revision: str) -> str:
        assert revision == "FETCH_HEAD"
        return self.fetched

    def cherry_pick(self, sha: str) -> None:
        parent, files = self.commits[sha]
        before = self.commits[parent][1] if parent else {}
        for path, content in files.items():
            if before.get(path) != content:
                self.worktree[path] = content
        for path in before:
            if path not in files:
                self.worktree.pop(path, None)
        new = self._new_sha()
        self.commits[new] = (self.head, dict(self.worktree))
        self.head = new

    def remove_path(self, path: str) -> None:
        for name in [n for n in self.worktree if n == path or n.startswith(path + "/")]:
            del self.worktree[name]

    def stage_all(self) -> None:
        pass

    def status_porcelain(self) -> str:
        committed = self.commits[self.head][1]
        changed = sorted(
            path
            for path in set(committed) | set(self.worktree)
            if committed.get(path) != self.worktree.get(path)
        )
        return "\n".join(f"M  {path}" for path in changed)

    def commit(self, message: str, *, when: datetime | None = None) -> str:
        sha = self._new_sha()
        self.commits[sha] = (self.head, dict(self.worktree))
        self.messages[sha] = message
        self.head = sha
        return sha

    def reset_branch(self, branch: str, start_point: str) -> None:
        self.reset("--hard", start_point)

    def push(self, branch: str, *, force: bool = False, set_upstream: bool = False) -> None:
        self.pushed.append((branch, force))
        self.remote[branch] = self.head

    def delete_remote_branch(self, branch: str) -> None:
        self.deleted.append(branch)


class FakeGateway:
    def __init__(self) -> None:
        self.created: list[tuple[str, str, str, str]] = []

    def list_open_pull_requests(self) -> list[PullRequest]:
        return []

    def find_pull_request_by_head(self, head: str) -> PullRequest | None:
        return None

    def list_labels(self) -> list[Label]:
        return []

    def create_label(self, name: str, description: str) -> Label:
        return Label(name=name, description=description)

    def add_labels(self, issue_number: int, labels: list[str]) -> None:
        pass

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        self.created.append((title, head, base, body))
        return PullRequest(number=11, html_url="https://github.com/acme/sdk/pull/11")


def _report(target: str, version: str) -> TargetGenerationReport:
    return TargetGenerationReport(
        target=target,
        speakeasy_version="1.400.0",
        version_report=MergedVersionReport(
            reports=(
                VersionReport(
                    key=target,
                    bump_type="minor",
                    new_version=version,
                    pr_report=f"## {target} PR changes",
                    commit_report=f"## {target} commit changes",
                ),
            )
        ),
    )


def _setup(tmp_path: Path) -> TreeRepo:
    repo = TreeRepo()
    for target, version, sdk_file in (
        ("python", "1.3.0", "python/sdk.py"),
        ("typescript", "0.9.0", "typescript/index.ts"),
    ):
        path = write_report(tmp_path / REPORTS, _report(target, version))
        repo.add_worker(
            f"w-{target}",
            {sdk_file: target, f"{REPORTS}/{path.name}": path.read_text(encoding="utf-8")},
        )
    return repo


def _ctx(tmp_path: Path, **fanout: object) -> RunContext:
    inputs: dict[str, object] = {"worker_branches": ("w-python", "w-typescript")}
    inputs.update(fanout)
    return RunContext(
        github_ref="refs/heads/main",
        workspace=tmp_path,
        invoked_at=NOW,
        workflow_name="Generate",
        fanout=FanoutInputs(**inputs),  # type: ignore[arg-type]
    )


def _finalizer(repo: TreeRepo, ctx: RunContext, gateway: FakeGateway) -> FanoutFinalizer:
    reconciler = PRReconciler(gateway=cast(GitHubGateway, gateway), ctx=ctx)
    return FanoutFinalizer(repo=cast(GitRepo, repo), ctx=ctx, reconciler=reconciler)


def test_finalize_squashes_union_of_workers(tmp_path: Path) -> None:
    repo = _setup(tmp_path)
    gateway = FakeGateway()
    ctx = _ctx(tmp_path, cleanup_workers=True)

    result = _finalizer(repo, ctx, gateway).finalize()

    target = f"speakeasy-sdk-regen-{int(NOW.timestamp())}"
    assert result.base_sha == "b0"
    assert result.target_branch == target
    assert repo.pushed == [(target, True)]
    landed = repo.commits[repo.remote[target]]
    assert landed[0] == "b0"
    assert landed[1] == {"README.md": "hi", "python/sdk.py": "python", "typescript/index.ts": "typescript"}
    assert repo.messages[result.squash_sha] == "## python commit changes\n## typescript commit changes"

    title, head, base, body = gateway.created[0]
    assert (head, base) == (target, "main")
    assert "## python PR changes" in body
    assert "## typescript PR changes" in body
    assert result.pull_request is not None and result.pull_request.number == 11
    assert result.merged.targets == ("python", "typescript")
    assert sorted(repo.deleted) == ["w-python", "w-typescript"]


def test_finalize_uses_explicit_target_and_message(tmp_path: Path) -> None:
    repo = _setup(tmp_path)
    ctx = _ctx(tmp_path, target_branch="regen-all", commit_message="chore: regen")
    result = _finalizer(repo, ctx, FakeGateway()).finalize()
    assert result.target_branch == "regen-all"
    assert repo.messages[result.squash_sha] == "chore: regen"
    assert repo.deleted == []


def test_finalize_falls_back_to_default_message(tmp_path: Path) -> None:
    repo = TreeRepo()
    (tmp_path / REPORTS).mkdir(parents=True)
    write_report(tmp_path / REPORTS, TargetGenerationReport(target="go"))
    repo.add_worker("w-go", {"go/sdk.go": "go"})
    ctx = _ctx(tmp_path, worker_branches=("w-go",))
    result = _finalizer(repo, ctx, FakeGateway()).finalize()
    assert repo.messages[result.squash_sha] == FALLBACK_COMMIT_MESSAGE


def test_finalize_in_test_mode_skips_push_and_pr(tmp_path: Path) -> None:
    repo = _setup(tmp_path)
    gateway = FakeGateway()
    ctx = _ctx(tmp_path, cleanup_workers=True)
    ctx = replace(ctx, mode="test")
    result = _finalizer(repo, ctx, gateway).finalize()
    assert result.pull_request is None
    assert repo.pushed == []
    assert gateway.created == []
    assert repo.deleted == []


def test_finalize_reports_failing_step(tmp_path: Path) -> None:
    repo = _setup(tmp_path)
    ctx = _ctx(tmp_path, worker_branches=("w-python", "w-missing"))
    with pytest.raises(FanoutError, match="failed to fetch worker branch w-missing"):
        _finalizer(repo, ctx, FakeGateway()).finalize()


def test_finalize_without_changes_fails(tmp_path: Path) -> None:
    repo = TreeRepo()
    write_report(tmp_path / REPORTS, TargetGenerationReport(target="go"))
    repo.add_worker("w-go", {})
    ctx = _ctx(tmp_path, worker_branches=("w-go",))
    with pytest.raises(FanoutError, match="no staged changes found after fanout finalization"):
        _finalizer(repo, ctx, FakeGateway()).finalize()


def test_finalize_requires_inputs(tmp_path: Path) -> None:
    repo = TreeRepo()
    with pytest.raises(FanoutError, match="at least one worker branch is required"):
        _finalizer(repo, _ctx(tmp_path, worker_branches=()), FakeGateway()).finalize()
    no_base = RunContext(workspace=tmp_path, fanout=FanoutInputs(worker_branches=("w",)))
    with pytest.raises(FanoutError, match="base branch is required"):
        _finalizer(repo, no_base, FakeGateway()).finalize()


def test_finalize_without_reports_fails(tmp_path: Path) -> None:
    repo = TreeRepo()
    repo.add_worker("w-go", {"go/sdk.go": "go"})
    ctx = _ctx(tmp_path, worker_branches=("w-go",))
    with pytest.raises(FanoutError, match="failed to read reports directory"):
        _finalizer(repo, ctx, FakeGateway()).finalize()


def test_description_from_reports(tmp_path: Path) -> None:
    write_report(tmp_path, _report("python", "1.3.0"))
    merged = merge_reports_dir(tmp_path)
    ctx = RunContext(github_ref="refs/heads/feat/x", workflow_name="Generate", feature_branch="f")
    description = description_from_reports(ctx, merged)
    assert description.source_branch == "feat/x"
    assert description.feature_branch == "f"
    assert description.speakeasy_version == "1.400.0"
    assert description.version_report == merged.version_report


def _git(path: Path, *args: str) -> str:
    return run(["git", "-C", str(path), *args])


def _isolate_git_identity(monkeypatch: pytest.MonkeyPatch, home: Path) -> None:
    home.mkdir()
    (home / ".gitconfig").write_text(
        "[user]\n\tuseConfigOnly = true\n[init]\n\tdefaultBranch = main\n", encoding="utf-8"
    )
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.delenv("GIT_CONFIG_GLOBAL", raising=False)
    for name in (
        "GIT_AUTHOR_NAME",
        "GIT_AUTHOR_EMAIL",
        "GIT_COMMITTER_NAME",
        "GIT_COMMITTER_EMAIL",
        "EMAIL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_finalize_against_real_remote_commits_as_bot(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _isolate_git_identity(monkeypatch, tmp_path / "home")
    remote = tmp_path / "remote.git"
    run(["git", "init", "--bare", str(remote)])
    _git(remote, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = tmp_path / "seed"
    run(["git", "init", str(seed)])
    _git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(seed, "remote", "add", "origin", str(remote))
    author = ("-c", "user.name=dev", "-c", "user.email=dev@acme.dev")
    (seed / "README.md").write_text("hi\n", encoding="utf-8")
    _git(seed, "add", "-A")
    _git(seed, *author, "commit", "-m", "initial")
    _git(seed, "push", "origin", "main")
    for target, version, sdk_file in (
        ("python", "1.3.0", "python/sdk.py"),
        ("typescript", "0.9.0", "typescript/index.ts"),
    ):
        _git(seed, "checkout", "-B", f"w-{target}", "main")
        (seed / sdk_file).parent.mkdir(parents=True, exist_ok=True)
        (seed / sdk_file).write_text(f"{target}\n", encoding="utf-8")
        write_report(seed / REPORTS, _report(target, version))
        _git(seed, "add", "-A")
        _git(seed, *author, "commit", "-m", f"regen {target}")
        _git(seed, "push", "origin", f"w-{target}")

    work = tmp_path / "work"
    run(["git", "clone", str(remote), str(work)])
    ctx = _ctx(work, cleanup_workers=True)
    reconciler = PRReconciler(gateway=cast(GitHubGateway, FakeGateway()), ctx=ctx)
    repo = GitRepo(work, AutomationConfig(bot_name="acmebot", bot_email="bot@acme.dev"))

    result = FanoutFinalizer(repo=repo, ctx=ctx, reconciler=reconciler).finalize()

    target = result.target_branch
    assert _git(remote, "rev-list", "--count", f"main..{target}").strip() == "1"
    assert _git(remote, "log", "-1", "--format=%an <%ae> %cn <%ce>", target).strip() == (
        "acmebot <bot@acme.dev> acmebot <bot@acme.dev>"
    )
    files = _git(remote, "ls-tree", "-r", "--name-only", target).split()
    assert sorted(files) == ["README.md", "python/sdk.py", "typescript/index.ts"]
    assert _git(remote, "branch", "--list", "w-*").strip() == ""
