from __future__ import annotations

from dataclasses import asdict, dataclass, field
import json
import logging
from pathlib import Path
from typing import cast

from regenflow.models import BumpType
from regenflow.observability import log_event


LOGGER = logging.getLogger("regenflow.reports")

REPORTS_DIR = ".speakeasy/reports"


class ReportError(RuntimeError):
    pass


@dataclass(frozen=True)
class VersionReport:
    key: str
    priority: int = 0
    must_generate: bool = False
    bump_type: BumpType = "none"
    new_version: str = ""
    pr_report: str = ""
    commit_report: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> VersionReport:
        priority = data.get("priority", 0)
        bump_type = data.get("bump_type") or "none"
        return cls(
            key=str(data.get("key", "")),
            priority=priority if isinstance(priority, int) else 0,
            must_generate=bool(data.get("must_generate", False)),
            bump_type=cast(BumpType, str(bump_type)),
            new_version=str(data.get("new_version") or ""),
            pr_report=str(data.get("pr_report") or ""),
            commit_report=str(data.get("commit_report") or ""),
        )


@dataclass(frozen=True)
class MergedVersionReport:
    reports: tuple[VersionReport, ...] = ()

    @classmethod
    def from_dict(cls, data: object) -> MergedVersionReport | None:
        if not isinstance(data, dict):
            return None
        raw_reports = data.get("reports") or []
        if not isinstance(raw_reports, list):
            return None
        return cls(
            reports=tuple(
                VersionReport.from_dict(cast(dict[str, object], item))
                for item in raw_reports
                if isinstance(item, dict)
            )
        )

    def to_dict(self) -> dict[str, object]:
        return {"reports": [asdict(report) for report in self.reports]}

    def _by_priority(self) -> list[VersionReport]:
        return sorted(self.reports, key=lambda report: -report.priority)

    def markdown_section(self) -> str:
        """PR-body section: every non-empty PR report, highest priority first."""
        return "\n".join(r.pr_report for r in self._by_priority() if r.pr_report.strip())

    def commit_markdown_section(self) -> str:
        return "\n".join(r.commit_report for r in self._by_priority() if r.commit_report.strip())

    def bump_types(self) -> list[BumpType]:
        return [report.bump_type for report in self.reports]

    def single_new_version(self) -> str:
        versions = {report.new_version for report in self.reports if report.new_version}
        return next(iter(versions)) if len(versions) == 1 else ""

    def single_bump_type(self) -> BumpType | None:
        """The one bump type shared by every versioned report, if they agree."""
        bump_types = {r.bump_type for r in self.reports if r.bump_type != "none"}
        if len(bump_types) != 1:
            return None
        return next(iter(bump_types))


@dataclass(frozen=True)
class TargetGenerationReport:
    target: str
    version_report: MergedVersionReport | None = None
    linting_report_url: str = ""
    changes_report_url: str = ""
    openapi_change_summary: str = ""
    speakeasy_version: str = ""
    manual_bump: bool = False

    def to_json(self) -> str:
        payload: dict[str, object] = {"target": self.target}
        if self.version_report is not None:
            payload["version_report"] = self.version_report.to_dict()
        for key in (
            "linting_report_url",
            "changes_report_url",
            "openapi_change_summary",
            "speakeasy_version",
        ):
            value = getattr(self, key)
            if value:
                payload[key] = value
        if self.manual_bump:
            payload["manual_bump"] = True
        return json.dumps(payload, indent=2)

    @classmethod
    def from_json(cls, raw: str) -> TargetGenerationReport:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("report must be a JSON object")
        return cls(
            target=str(data.get("target") or ""),
            version_report=MergedVersionReport.from_dict(data.get("version_report")),
            linting_report_url=str(data.get("linting_report_url") or ""),
            changes_report_url=str(data.get("changes_report_url") or ""),
            openapi_change_summary=str(data.get("openapi_change_summary") or ""),
            speakeasy_version=str(data.get("speakeasy_version") or ""),
            manual_bump=bool(data.get("manual_bump", False)),
        )


@dataclass(frozen=True)
class MergedReports:
    targets: tuple[str, ...]
    version_report: MergedVersionReport
    speakeasy_version: str = ""
    linting_report_url: str = ""
    changes_report_url: str = ""
    openapi_change_summary: str = ""
    manual_bump: bool = False
    per_target: dict[str, TargetGenerationReport] = field(default_factory=dict)


def write_report(reports_dir: Path, report: TargetGenerationReport) -> Path:
    """Persist one target's report; each matrix job writes exactly one file."""
    if not report.target:
        raise ReportError("cannot write a generation report without a target")
    reports_dir.mkdir(parents=True, exist_ok=True)
    path = reports_dir / f"{report.target}.json"
    path.write_text(report.to_json(), encoding="utf-8")
    log_event(LOGGER, "report_written", target=report.target, path=str(path))
    return path


def read_reports(reports_dir: Path) -> dict[str, TargetGenerationReport]:
    try:
        entries = sorted(reports_dir.iterdir())
    except OSError as exc:
        raise ReportError(f"failed to read reports directory: {exc}") from exc

    accumulated: dict[str, TargetGenerationReport] = {}
    for entry in entries:
        if entry.is_dir() or entry.suffix != ".json":
            continue
        try:
            report = TargetGenerationReport.from_json(entry.read_text(encoding="utf-8"))
        except (ValueError, OSError) as exc:
            log_event(LOGGER, "report_skipped", path=str(entry), error_type=type(exc).__name__)
            continue
        if not report.target:
            report = TargetGenerationReport(
                target=entry.stem,
                version_report=report.version_report,
                linting_report_url=report.linting_report_url,
                changes_report_url=report.changes_report_url,
                openapi_change_summary=report.openapi_change_summary,
                speakeasy_version=report.speakeasy_version,
                manual_bump=report.manual_bump,
            )
        accumulated[report.target] = report
    return accumulated


def merge_reports(reports: dict[str, TargetGenerationReport], *, source: str = "") -> MergedReports:
    if not reports:
        raise ReportError(f"no reports found in {source}" if source else "no reports found")

    targets = tuple(sorted(reports))
    all_reports: list[VersionReport] = []
    summaries: list[str] = []
    speakeasy_version = ""
    linting_report_url = ""
    changes_report_url = ""
    manual_bump = False
    for target in targets:
        report = reports[target]
        if report.version_report is not None:
            all_reports.extend(report.version_report.reports)
        speakeasy_version = speakeasy_version or report.speakeasy_version
        linting_report_url = linting_report_url or report.linting_report_url
        changes_report_url = changes_report_url or report.changes_report_url
        if report.openapi_change_summary and report.openapi_change_summary not in summaries:
            summaries.append(report.openapi_change_summary)
        manual_bump = manual_bump or report.manual_bump

    return MergedReports(
        targets=targets,
        version_report=MergedVersionReport(reports=tuple(all_reports)),
        speakeasy_version=speakeasy_version,
        linting_report_url=linting_report_url,
        changes_report_url=changes_report_url,
        openapi_change_summary="\n\n".join(summaries),
        manual_bump=manual_bump,
        per_target=dict(reports),
    )


def merge_reports_dir(reports_dir: Path) -> MergedReports:
    merged = merge_reports(read_reports(reports_dir), source=str(reports_dir))
    log_event(LOGGER, "reports_merged", count=len(merged.targets), path=str(reports_dir))
    return merged

