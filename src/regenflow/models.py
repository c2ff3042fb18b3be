from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, get_args


Mode = Literal["direct", "pr", "matrix", "test"]
ActionKind = Literal[
    "run-workflow",
    "suggest",
    "finalize",
    "resolve-branch",
    "fanout-finalize",
    "release",
    "tag",
    "test",
]
BumpType = Literal["none", "patch", "minor", "major", "prerelease", "graduate", "custom"]
BumpMethod = Literal["manual", "automated"]
BranchKind = Literal["ephemeral", "feature", "shared"]

ACTION_KINDS: tuple[ActionKind, ...] = get_args(ActionKind)
MODES: tuple[Mode, ...] = get_args(Mode)


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str
    title: str = ""
    body: str = ""
    head_ref: str = ""
    base_ref: str = ""
    labels: tuple[str, ...] = ()
    head_sha: str = ""


@dataclass(frozen=True)
class Label:
    name: str
    description: str = ""


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
    user_login: str
    html_url: str = ""


@dataclass(frozen=True)
class ReviewComment:
    comment_id: int
    body: str
    path: str
    line: int | None


@dataclass(frozen=True)
class GitRef:
    ref: str
    sha: str


@dataclass(frozen=True)
class Release:
    release_id: int
    tag_name: str
    html_url: str


@dataclass(frozen=True)
class BumpDecision:
    bump_type: BumpType
    manual: bool = False

    @property
    def applies(self) -> bool:
        return self.bump_type != "none"


NO_BUMP = BumpDecision(bump_type="none")


@dataclass(frozen=True)
class Branch:
    name: str
    kind: BranchKind
