from __future__ import annotations

import re
import warnings

from regenflow import prdescription
from regenflow.prdescription import (
    MAX_BODY_LENGTH,
    DescriptionInput,
    branch_title_tag,
    describe,
    docs_title,
    generate_legacy,
    generator_changelog,
    strip_control_codes,
    suggestion_title,
    truncate_body,
)
from regenflow.reports import MergedVersionReport, VersionReport


def _report(*reports: VersionReport) -> MergedVersionReport:
    return MergedVersionReport(reports=reports)


def test_describe_uses_report_sections_and_versioning_marker() -> None:
    description = DescriptionInput(
        workflow_name="Generate",
        source_branch="main",
        speakeasy_version="1.400.0",
        version_report=_report(
            VersionReport(
                key="go", priority=2, bump_type="minor", new_version="1.3.0", pr_report="## Go\n- added"
            ),
        ),
        linting_report_url="https://lint/1",
    )

    result = describe(description)

    assert result.title == "chore: 🐝 Update SDK - Generate 1.3.0"
    assert result.body.startswith("> [!IMPORTANT]\n> Linting report available at: <https://lint/1>\n")
    assert "## Versioning\n\nVersion Bump Type: [minor] - 🤖 (automated)\n" in result.body
    assert "## Go\n- added" in result.body
    assert result.body.endswith("Based on [Speakeasy CLI](https://github.com/speakeasy-api/speakeasy) 1.400.0\n")


def test_describe_manual_bump_mentions_label() -> None:
    description = DescriptionInput(
        workflow_name="Generate",
        manual_bump=True,
        version_report=_report(VersionReport(key="go", bump_type="major")),
    )

    body = describe(description).body

    assert "**Version Bump Type: [major] - 👤 (manual)**" in body
    assert "until the major label is removed" in body


def test_describe_falls_back_to_legacy_without_version_report() -> None:
    description = DescriptionInput(
        workflow_name="Generate",
        source_branch="feature/x",
        specified_target="go",
        speakeasy_version="1.400.0",
        openapi_change_summary="\x1b[32madded /pets\x1b[0m",
        changelog=generator_changelog({"go": "- fix retries"}),
    )

    result = describe(description)

    assert result.title == "chore: 🐝 Update SDK - Generate GO [feature-x]"
    assert "## OpenAPI Change Summary\n\nadded /pets\n" in result.body
    assert "## Generator Changelog\n\n- fix retries" in result.body


def test_legacy_label_bump_adds_tip_guidance() -> None:
    description = DescriptionInput(
        workflow_name="Generate",
        version_report=_report(VersionReport(key="go", bump_type="patch")),
        label_bump_type="patch",
    )

    body = generate_legacy(description).body

    assert "Version Bump Type: [patch] - 🤖 (automated)" in body
    assert "> [!TIP]" in body
    assert "info.version" in body


def test_sources_only_title_and_body() -> None:
    result = describe(
        DescriptionInput(
            workflow_name="Generate",
            source_generation=True,
            version_report=_report(),
        )
    )
    assert result.title == "chore: 🐝 Update Specs - Generate"
    assert result.body.startswith("Update of compiled sources")
    assert "Based on" not in result.body


def test_branch_title_tag_prefers_feature_branch() -> None:
    assert branch_title_tag("main", "") == ""
    assert branch_title_tag("release/v2", "") == " [release-v2]"
    assert branch_title_tag("release/v2", "my-feature") == " [my-feature]"


def test_docs_and_suggestion_titles() -> None:
    assert docs_title("Generate", "main") == "chore: 🐝 Update SDK Docs - Generate"
    assert suggestion_title("Suggest", "dev") == "chore: 🐝 Suggest OpenAPI changes - Suggest [dev]"


def test_truncate_body_caps_length() -> None:
    body = truncate_body("x" * (MAX_BODY_LENGTH + 10))
    assert len(body) == MAX_BODY_LENGTH
    assert body.endswith("...")
    assert truncate_body("short") == "short"


def test_strip_control_codes_removes_escape_sequences() -> None:
    text = "\x1b[1;32mok\x1b[0m \x1b[?25lhidden\x1b(B done"
    assert strip_control_codes(text) == "ok hidden done"


def test_control_code_pattern_compiles_without_warnings() -> None:
    re.purge()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        re.compile(prdescription._FULL_ANSI_RE.pattern)
