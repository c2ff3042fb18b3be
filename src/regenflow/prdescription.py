from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Final

from regenflow.models import BumpType
from regenflow.observability import log_event
from regenflow.reports import MergedVersionReport
from regenflow.run_context import is_main_branch, sanitize_branch_name
from regenflow.versionbumps import AUTOMATED_MARKER, MANUAL_MARKER, format_bump_marker


LOGGER = logging.getLogger("regenflow.prdescription")

MAX_BODY_LENGTH: Final[int] = 65536

TITLE_SDK: Final[str] = "chore: 🐝 Update SDK - "
TITLE_SPECS: Final[str] = "chore: 🐝 Update Specs - "
TITLE_DOCS: Final[str] = "chore: 🐝 Update SDK Docs - "
TITLE_SUGGEST: Final[str] = "chore: 🐝 Suggest OpenAPI changes - "

CLI_URL: Final[str] = "https://github.com/speakeasy-api/speakeasy"

_SIMPLE_ANSI_RE: Final[re.Pattern[str]] = re.compile(r"\x1b\[[0-9;]*m")
_FULL_ANSI_RE: Final[re.Pattern[str]] = re.compile(
    "[\u001b\u009b][\\[\\]()#;?]*(?:(?:(?:[a-zA-Z\\d]*(?:;[a-zA-Z\\d]*)*)?\u0007)"
    "|(?:(?:\\d{1,4}(?:;\\d{0,4})*)?[\\dA-PRZcf-ntqry=><~]))"
)

_TIP_PRERELEASE: Final[str] = (
    "\n> To exit [pre-release versioning](https://www.speakeasy.com/docs/sdks/manage/versioning"
    "#pre-release-version-bumps), set a new version or run `speakeasy bump graduate`."
)
_TIP_BREAKING: Final[str] = (
    "\n> If updates to your OpenAPI document introduce breaking changes, be sure to update the "
    "`info.version` field to [trigger the correct version bump](https://www.speakeasy.com/docs/"
    "sdks/manage/versioning#openapi-document-changes)."
)
_TIP_MANUAL: Final[str] = (
    "\n> Speakeasy supports manual control of SDK versioning through [multiple methods]"
    "(https://www.speakeasy.com/docs/sdks/manage/versioning#manual-version-bumps)."
)


class DescriptionUnavailable(ValueError):
    """The report-driven builder cannot describe this run."""


@dataclass(frozen=True)
class DescriptionInput:
    workflow_name: str = ""
    source_branch: str = ""
    feature_branch: str = ""
    specified_target: str = ""
    source_generation: bool = False
    docs_generation: bool = False
    speakeasy_version: str = ""
    manual_bump: bool = False
    version_report: MergedVersionReport | None = None
    linting_report_url: str = ""
    changes_report_url: str = ""
    openapi_change_summary: str = ""
    changelog: str = ""
    label_bump_type: BumpType | None = None


@dataclass(frozen=True)
class Description:
    title: str
    body: str


def strip_ansi(text: str) -> str:
    return _SIMPLE_ANSI_RE.sub("", text)


def strip_control_codes(text: str) -> str:
    return _FULL_ANSI_RE.sub("", text)


def truncate_body(body: str) -> str:
    if len(body) > MAX_BODY_LENGTH:
        return body[: MAX_BODY_LENGTH - 3] + "..."
    return body


def branch_title_tag(source_branch: str, feature_branch: str) -> str:
    if feature_branch:
        return f" [{feature_branch}]"
    if source_branch and not is_main_branch(source_branch.lower()):
        return f" [{sanitize_branch_name(source_branch.removeprefix('refs/heads/'))}]"
    return ""


def version_suffix(report: MergedVersionReport | None) -> str:
    if report is None:
        return ""
    version = report.single_new_version()
    return f" {version}" if version else ""


def build_title(description: DescriptionInput) -> str:
    if description.docs_generation:
        title = TITLE_DOCS + description.workflow_name
    elif description.source_generation:
        title = TITLE_SPECS + description.workflow_name
    else:
        title = TITLE_SDK + description.workflow_name
        target = description.specified_target
        if target and target.upper() not in title.upper():
            title += " " + target.upper()
    title += branch_title_tag(description.source_branch, description.feature_branch)
    return title + version_suffix(description.version_report)


def _report_callouts(description: DescriptionInput) -> str:
    out = ""
    if description.linting_report_url or description.changes_report_url:
        out += "> [!IMPORTANT]\n"
    if description.linting_report_url:
        out += f"> Linting report available at: <{description.linting_report_url}>\n"
    if description.changes_report_url:
        out += f"> OpenAPI Change report available at: <{description.changes_report_url}>\n"
    return out


def _footer(description: DescriptionInput) -> str:
    if description.source_generation or not description.speakeasy_version:
        return ""
    return f"\nBased on [Speakeasy CLI]({CLI_URL}) {description.speakeasy_version}\n"


def generate(description: DescriptionInput) -> Description:
    """Report-driven builder: the version report supplies every changelog line."""
    report = description.version_report
    if report is None:
        raise DescriptionUnavailable("no version report available")

    body = _report_callouts(description)
    body += "Update of compiled sources" if description.source_generation else "# SDK update\n"

    bump_type = report.single_bump_type()
    if bump_type is not None and bump_type not in {"none", "custom"}:
        body += "## Versioning\n\n"
        if description.manual_bump:
            message = f"**{format_bump_marker(bump_type, 'manual')} (manual)**"
            message += (
                f"\n\nThis PR will stay on the current version until the {bump_type} "
                "label is removed and/or modified."
            )
        else:
            message = f"{format_bump_marker(bump_type, 'automated')} (automated)"
        body += message + "\n"

    body += strip_ansi(report.markdown_section())
    body += _footer(description)
    return Description(title=build_title(description), body=body)


def generate_legacy(description: DescriptionInput) -> Description:
    """Per-language changelog builder kept for runs without a version report."""
    if description.docs_generation:
        title = TITLE_DOCS + description.workflow_name
    elif description.source_generation:
        title = TITLE_SPECS + description.workflow_name
    else:
        title = TITLE_SDK + description.workflow_name
        target = description.specified_target
        if target and target.upper() not in title:
            title += " " + target.upper()
    title += branch_title_tag(description.source_branch, description.feature_branch)
    title += version_suffix(description.version_report)

    body = _report_callouts(description)
    body += "Update of compiled sources" if description.source_generation else "# SDK update\n"

    report = description.version_report
    if report is not None:
        bump_type = description.label_bump_type
        if bump_type is not None and bump_type not in {"none", "custom"}:
            message = f"Version Bump Type: [{bump_type}] - "
            if description.manual_bump:
                message = f"**{message}{MANUAL_MARKER} (manual)**"
                message += (
                    f"\n\nThis PR will stay on the current version until the {bump_type} "
                    "label is removed and/or modified."
                )
            else:
                message += f"{AUTOMATED_MARKER} (automated)"
                message += "\n\n> [!TIP]"
                if bump_type == "prerelease":
                    message += _TIP_PRERELEASE
                elif bump_type in {"patch", "minor"}:
                    message += _TIP_BREAKING
                message += _TIP_MANUAL
            body += f"## Versioning\n\n{message}\n"
        body += strip_control_codes(report.markdown_section())
    else:
        if description.openapi_change_summary:
            summary = strip_control_codes(description.openapi_change_summary)
            body += f"## OpenAPI Change Summary\n\n{summary}\n"
        body += description.changelog

    if not description.source_generation:
        body += f"\nBased on [Speakeasy CLI]({CLI_URL}) {description.speakeasy_version}\n"
    return Description(title=title, body=body)


def describe(description: DescriptionInput) -> Description:
    """Report-driven description first, the legacy builder when it cannot be produced."""
    try:
        result = generate(description)
    except Exception as exc:  # noqa: BLE001
        log_event(LOGGER, "pr_description_fallback", error_type=type(exc).__name__, error=str(exc))
        result = generate_legacy(description)
    return Description(title=result.title, body=truncate_body(result.body))


def docs_body(
    *, doc_version: str, doc_location: str, speakeasy_version: str, generation_version: str
) -> str:
    return (
        "# SDK Docs update\n"
        "Based on:\n"
        f"- OpenAPI Doc {doc_version} {doc_location}\n"
        f"- Speakeasy CLI {speakeasy_version} ({generation_version}) {CLI_URL}"
    )


def docs_title(workflow_name: str, source_branch: str) -> str:
    return TITLE_DOCS + workflow_name + branch_title_tag(source_branch, "")


def suggestion_body(output: str) -> str:
    return f"Generated OpenAPI Suggestions by Speakeasy CLI.\n    Outputs changes to *{output}*."


def suggestion_title(workflow_name: str, source_branch: str) -> str:
    return TITLE_SUGGEST + workflow_name + branch_title_tag(source_branch, "")


def generator_changelog(release_notes: dict[str, str]) -> str:
    """Legacy changelog: one "Generator Changelog" section per language with notes."""
    out = ""
    for language in sorted(release_notes):
        notes = release_notes[language].strip()
        if notes:
            out += f"\n\n## Generator Changelog\n\n{notes}"
    return "\n" + out if out else ""
