from __future__ import annotations

from hypothesis import given, strategies as st
import pytest

from regenflow.models import NO_BUMP, BumpDecision
from regenflow.versionbumps import (
    BUMP_TYPE_LABELS,
    format_bump_marker,
    is_bump_label,
    manual_bump_was_used,
    parse_bump_marker,
    resolve_label_bump,
    stack_rank,
)


@pytest.mark.parametrize(
    ("labels", "expected"),
    [
        (["graduate", "major"], "graduate"),
        (["major", "graduate"], "graduate"),
        (["major", "minor"], "major"),
        (["minor", "patch"], "minor"),
        (["patch", "major"], "major"),
        (["graduate", "patch"], "graduate"),
        (["prerelease"], "prerelease"),
        (["custom"], "custom"),
        (["prerelease", "custom"], "none"),
        (["prerelease", "patch"], "patch"),
        (["custom", "minor"], "minor"),
        (["bug", "enhancement"], "none"),
        ([], "none"),
    ],
)
def test_stack_rank_priorities(labels: list[str], expected: str) -> None:
    assert stack_rank(labels) == expected


_ORDER = ["graduate", "major", "minor", "patch"]


@given(st.lists(st.sampled_from([*BUMP_TYPE_LABELS, "bug", "docs"]), max_size=8))
def test_stack_rank_picks_highest_priority_label(labels: list[str]) -> None:
    result = stack_rank(labels)
    ranked = [label for label in _ORDER if label in labels]
    if ranked:
        assert result == ranked[0]
    else:
        distinct = {label for label in labels if is_bump_label(label)}
        assert result == (next(iter(distinct)) if len(distinct) == 1 else "none")
    assert stack_rank(list(reversed(labels))) == result


def test_bump_marker_round_trip_and_rejects_unknown() -> None:
    body = "Some text\n" + format_bump_marker("minor", "manual") + "\nmore"
    assert parse_bump_marker(body) == ("minor", "manual")
    assert parse_bump_marker(format_bump_marker("patch", "automated")) == ("patch", "automated")
    assert parse_bump_marker("Version Bump Type: [tiny] - 👤") is None
    assert parse_bump_marker("") is None


def test_resolve_label_bump_without_readable_marker_gives_no_bump() -> None:
    assert resolve_label_bump(["major"], "# SDK update\nno marker here") == NO_BUMP
    assert resolve_label_bump(["minor"], "Version Bump Type: [tiny] - 👤") == NO_BUMP
    assert resolve_label_bump(["patch"], "") == NO_BUMP


def test_resolve_label_bump_no_labels_means_no_bump() -> None:
    assert resolve_label_bump(["bug"], format_bump_marker("major", "manual")) == NO_BUMP


def test_resolve_label_bump_matching_automated_marker_is_not_manual() -> None:
    body = format_bump_marker("patch", "automated")
    assert resolve_label_bump(["patch"], body) == NO_BUMP


def test_resolve_label_bump_matching_manual_marker_stays_in_force() -> None:
    body = format_bump_marker("major", "manual")
    assert resolve_label_bump(["major"], body) == BumpDecision("major", manual=True)


def test_resolve_label_bump_changed_label_overrides_recorded_decision() -> None:
    body = format_bump_marker("patch", "automated")
    assert resolve_label_bump(["minor"], body) == BumpDecision("minor", manual=True)


def test_manual_bump_was_used_requires_matching_report_type() -> None:
    decision = BumpDecision("minor", manual=True)
    assert manual_bump_was_used(decision, ["patch", "minor"])
    assert not manual_bump_was_used(decision, ["patch"])
    assert not manual_bump_was_used(NO_BUMP, ["none"])
