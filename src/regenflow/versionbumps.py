from __future__ import annotations

from collections.abc import Iterable
import re
from typing import Final, Literal, cast

from regenflow.models import NO_BUMP, BumpDecision, BumpMethod, BumpType


BUMP_TYPE_LABELS: Final[dict[BumpType, str]] = {
    "major": "Major version bump",
    "minor": "Minor version bump",
    "patch": "Patch version bump",
    "graduate": "Graduate prerelease to stable",
    "prerelease": "Bump by a prerelease version",
    "custom": "A custom version was applied",
}

MANUAL_MARKER: Final[str] = "👤"
AUTOMATED_MARKER: Final[str] = "🤖"

_PRIORITY_ORDER: Final[tuple[BumpType, ...]] = ("graduate", "major", "minor", "patch")
_SOLE_LABEL_ONLY: Final[frozenset[BumpType]] = frozenset({"prerelease", "custom"})

# Changing this pattern breaks recovery of decisions recorded in existing PR bodies.
_BUMP_MARKER_RE: Final[re.Pattern[str]] = re.compile(
    r"Version Bump Type:\s*\[(\w+)]\s*-\s*(👤|🤖)"
)

_MARKER_TO_METHOD: Final[dict[str, BumpMethod]] = {
    MANUAL_MARKER: "manual",
    AUTOMATED_MARKER: "automated",
}


def is_bump_label(name: str) -> bool:
    return name in BUMP_TYPE_LABELS


def bump_labels(labels: Iterable[str]) -> list[BumpType]:
    return [cast(BumpType, name) for name in labels if is_bump_label(name)]


def stack_rank(labels: Iterable[str]) -> BumpType:
    """Collapse the bump labels on a PR into one candidate.

    graduate > major > minor > patch. prerelease and custom only count when
    they are the only bump label present.
    """
    candidates = bump_labels(labels)
    for priority in _PRIORITY_ORDER:
        if priority in candidates:
            return priority
    distinct = set(candidates)
    if len(distinct) == 1:
        only = next(iter(distinct))
        if only in _SOLE_LABEL_ONLY:
            return only
    return "none"


def parse_bump_marker(body: str) -> tuple[BumpType, BumpMethod] | None:
    match = _BUMP_MARKER_RE.search(body or "")
    if match is None:
        return None
    bump_type, marker = match.group(1), match.group(2)
    if bump_type not in BUMP_TYPE_LABELS:
        return None
    return cast(BumpType, bump_type), _MARKER_TO_METHOD[marker]


def format_bump_marker(bump_type: BumpType, method: Literal["manual", "automated"]) -> str:
    marker = MANUAL_MARKER if method == "manual" else AUTOMATED_MARKER
    return f"Version Bump Type: [{bump_type}] - {marker}"


def resolve_label_bump(labels: Iterable[str], body: str) -> BumpDecision:
    """Decide the bump a PR's labels request, given the decision recorded in its body.

    A label-derived bump applies when the body records a different type, or the same
    type chosen manually. A body without a readable marker gives no bump.
    """
    candidate = stack_rank(labels)
    if candidate == "none":
        return NO_BUMP

    recorded = parse_bump_marker(body)
    if recorded is None:
        return NO_BUMP

    recorded_type, recorded_method = recorded
    if recorded_type != candidate or recorded_method == "manual":
        return BumpDecision(bump_type=candidate, manual=True)
    return NO_BUMP


def manual_bump_was_used(decision: BumpDecision, report_bump_types: Iterable[str]) -> bool:
    if not decision.applies:
        return False
    return any(bump_type == decision.bump_type for bump_type in report_bump_types)
