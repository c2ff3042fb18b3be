from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
from typing import cast

from regenflow.config import ConfigError
from regenflow.models import ACTION_KINDS, MODES, ActionKind, Mode
from regenflow.observability import log_event


LOGGER = logging.getLogger("regenflow.run_context")

_PR_REF_MARKERS = ("refs/pull", "refs/pulls")
_LABEL_EVENT_ACTIONS = frozenset({"labeled", "unlabeled"})


def sanitize_branch_name(branch: str) -> str:
    sanitized = branch.replace("/", "-").replace("_", "-").replace(" ", "-")
    return sanitized.strip("-")


def is_main_branch(branch: str) -> bool:
    return branch in {"main", "master"}


def parse_list_input(raw: str | None) -> tuple[str, ...]:
    if raw is None or not raw.strip():
        return ()
    fields = raw.replace("\n", ",").split(",")
    return tuple(item.strip() for item in fields if item.strip())


@dataclass(frozen=True)
class FanoutInputs:
    base_branch: str = ""
    worker_branches: tuple[str, ...] = ()
    target_branch: str = ""
    reports_dir: str = ""
    cleanup_paths: tuple[str, ...] = ()
    post_generate_script: str = ""
    commit_message: str = ""
    cleanup_workers: bool = False


@dataclass(frozen=True)
class RunContext:
    """Everything a run needs from its environment, captured once at process start."""

    action: ActionKind = "run-workflow"
    mode: Mode = "direct"
    github_ref: str = ""
    head_ref: str = ""
    base_ref: str = ""
    event_name: str = ""
    event_action: str = ""
    event_pr_number: int | None = None
    repository: str = ""
    server_url: str = "https://github.com"
    workspace: Path = field(default_factory=Path.cwd)
    working_directory: str = ""
    output_path: Path | None = None
    workflow_name: str = ""
    run_id: str = ""
    feature_branch: str = ""
    branch_name: str = ""
    target: str = ""
    languages: str = ""
    force: bool = False
    signed_commits: bool = False
    skip_release: bool = False
    skip_testing: bool = False
    enable_sdk_changelog: bool = False
    registry_tags: tuple[str, ...] = ()
    sources: tuple[str, ...] = ()
    targets: tuple[str, ...] = ()
    code_samples: tuple[str, ...] = ()
    openapi_doc_output: str = ""
    set_version: str = ""
    cli_output: str = ""
    debug: bool = False
    github_token: str = ""
    pr_creation_token: str = ""
    api_key: str = ""
    fanout: FanoutInputs = field(default_factory=FanoutInputs)
    invoked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_environ(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        now: datetime | None = None,
    ) -> RunContext:
        env = os.environ if environ is None else environ

        def get(key: str) -> str:
            return env.get(key, "").strip()

        def flag(key: str) -> bool:
            return get(key).lower() == "true"

        event_action, event_pr_number = _read_event(get("GITHUB_EVENT_PATH"))
        output_path = get("GITHUB_OUTPUT")
        workspace = get("GITHUB_WORKSPACE")

        return cls(
            action=_parse_action(get("INPUT_ACTION")),
            mode=_parse_mode(get("INPUT_MODE")),
            github_ref=get("GITHUB_REF"),
            head_ref=get("GITHUB_HEAD_REF"),
            base_ref=get("GITHUB_BASE_REF"),
            event_name=get("GITHUB_EVENT_NAME"),
            event_action=event_action,
            event_pr_number=event_pr_number,
            repository=get("INPUT_GITHUB_REPOSITORY") or get("GITHUB_REPOSITORY"),
            server_url=get("GITHUB_SERVER_URL") or "https://github.com",
            workspace=Path(workspace) if workspace else Path.cwd(),
            working_directory=get("INPUT_WORKING_DIRECTORY"),
            output_path=Path(output_path) if output_path else None,
            workflow_name=get("GITHUB_WORKFLOW"),
            run_id=get("GITHUB_RUN_ID"),
            feature_branch=get("INPUT_FEATURE_BRANCH"),
            branch_name=get("INPUT_BRANCH_NAME"),
            target=get("INPUT_TARGET"),
            languages=get("INPUT_LANGUAGES"),
            force=flag("INPUT_FORCE"),
            signed_commits=flag("INPUT_SIGNED_COMMITS"),
            skip_release=flag("INPUT_SKIP_RELEASE"),
            skip_testing=flag("INPUT_SKIP_TESTING"),
            enable_sdk_changelog=flag("INPUT_ENABLE_SDK_CHANGELOG"),
            registry_tags=parse_list_input(get("INPUT_REGISTRY_TAGS")),
            sources=parse_list_input(get("INPUT_SOURCES")),
            targets=parse_list_input(get("INPUT_TARGETS")),
            code_samples=parse_list_input(get("INPUT_CODE_SAMPLES")),
            openapi_doc_output=get("INPUT_OPENAPI_DOC_OUTPUT"),
            set_version=get("INPUT_SET_VERSION"),
            cli_output=env.get("INPUT_CLI_OUTPUT", ""),
            debug=flag("INPUT_DEBUG") or get("RUNNER_DEBUG") == "1",
            github_token=get("INPUT_GITHUB_ACCESS_TOKEN"),
            pr_creation_token=get("PR_CREATION_PAT"),
            api_key=get("SPEAKEASY_API_KEY"),
            fanout=FanoutInputs(
                base_branch=get("INPUT_BASE_BRANCH"),
                worker_branches=parse_list_input(get("INPUT_WORKER_BRANCHES")),
                target_branch=get("INPUT_TARGET_BRANCH"),
                reports_dir=get("INPUT_REPORTS_DIR"),
                cleanup_paths=parse_list_input(get("INPUT_CLEANUP_PATHS")),
                post_generate_script=get("INPUT_POST_GENERATE_SCRIPT"),
                commit_message=get("INPUT_COMMIT_MESSAGE"),
                cleanup_workers=flag("INPUT_CLEANUP_WORKERS"),
            ),
            invoked_at=now or datetime.now(timezone.utc),
        )

    def with_action(self, action: ActionKind) -> RunContext:
        return replace(self, action=action)

    @property
    def is_pr_triggered(self) -> bool:
        return any(marker in self.github_ref for marker in _PR_REF_MARKERS)

    @property
    def ref(self) -> str:
        """The ref generation runs against.

        Label changes on a pull request re-run versioning against the base branch,
        every other PR event uses the head branch.
        """
        if self.is_pr_triggered:
            if self.event_action in _LABEL_EVENT_ACTIONS:
                return self.base_ref
            return self.head_ref
        return self.github_ref

    @property
    def source_branch(self) -> str:
        if self.is_pr_triggered:
            return self.head_ref
        return self.ref.removeprefix("refs/heads/")

    @property
    def on_main_branch(self) -> bool:
        return is_main_branch(self.source_branch)

    @property
    def target_base_branch(self) -> str:
        if self.on_main_branch:
            return self.ref
        return f"refs/heads/{self.source_branch}"

    @property
    def pr_base_branch(self) -> str:
        return self.target_base_branch.removeprefix("refs/heads/")

    @property
    def is_test_mode(self) -> bool:
        return self.mode == "test"

    @property
    def is_docs_generation(self) -> bool:
        return "docs" in self.languages

    @property
    def should_skip_releasing(self) -> bool:
        return self.mode == "direct" and (self.skip_release or self.is_pr_triggered)

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0] if "/" in self.repository else ""

    @property
    def repo_name(self) -> str:
        return self.repository.split("/", 1)[1] if "/" in self.repository else self.repository

    @property
    def repo_root(self) -> Path:
        return self.workspace

    @property
    def work_dir(self) -> Path:
        if not self.working_directory or self.working_directory == ".":
            return self.repo_root
        return self.repo_root / self.working_directory

    def resolve_path(self, path: str) -> str:
        """Express ``path`` relative to the repository root, honouring the working directory."""
        clean = os.path.normpath(path)
        if not self.working_directory or self.working_directory == ".":
            return clean
        return os.path.join(self.working_directory, clean)

    @property
    def run_url(self) -> str:
        if not self.repository or not self.run_id:
            return ""
        return f"{self.server_url}/{self.repository}/actions/runs/{self.run_id}"

    @property
    def timestamp(self) -> int:
        return int(self.invoked_at.timestamp())


def _parse_action(raw: str) -> ActionKind:
    if not raw:
        return "run-workflow"
    if raw not in ACTION_KINDS:
        raise ConfigError(f"unsupported action {raw!r}; expected one of: {', '.join(ACTION_KINDS)}")
    return cast(ActionKind, raw)


def _parse_mode(raw: str) -> Mode:
    if not raw:
        return "direct"
    if raw not in MODES:
        raise ConfigError(f"unsupported mode {raw!r}; expected one of: {', '.join(MODES)}")
    return cast(Mode, raw)


def _read_event(path: str) -> tuple[str, int | None]:
    if not path:
        return "", None
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        log_event(LOGGER, "event_payload_unreadable", path=path, error_type=type(exc).__name__)
        return "", None
    if not isinstance(payload, dict):
        return "", None
    action = payload.get("action")
    number = payload.get("number")
    return (
        action if isinstance(action, str) else "",
        number if isinstance(number, int) and not isinstance(number, bool) and number > 0 else None,
    )
