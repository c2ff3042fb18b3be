"""Boundary to the external SDK generator.

The generator is any command that honours the environment contract below and
writes a JSON generation result to ``REGENFLOW_RESULT_PATH``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
from typing import cast

from regenflow.config import CommandsConfig
from regenflow.models import BumpDecision
from regenflow.observability import log_event
from regenflow.releases import GenerationInfo, LanguageReleaseInfo, ReleasesInfo
from regenflow.reports import MergedVersionReport, TargetGenerationReport
from regenflow.shell import run, run_streaming


LOGGER = logging.getLogger("regenflow.generation")


class GenerationError(RuntimeError):
    pass


@dataclass(frozen=True)
class TargetResult:
    language: str
    directory: str = "."
    regenerated: bool = False
    publish: bool = False
    package_name: str = ""
    version: str = ""
    release_notes: str = ""


@dataclass(frozen=True)
class GenerationResult:
    speakeasy_version: str = ""
    generation_version: str = ""
    openapi_doc_version: str = ""
    openapi_doc_location: str = ""
    has_testing_enabled: bool = False
    targets: dict[str, TargetResult] = field(default_factory=dict)
    version_report: MergedVersionReport | None = None
    linting_report_url: str = ""
    changes_report_url: str = ""
    openapi_change_summary: str = ""
    previous_gen_version: str = ""
    sources_only: bool = False

    @classmethod
    def from_json(cls, raw: str) -> GenerationResult:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("generation result must be a JSON object")
        targets: dict[str, TargetResult] = {}
        raw_targets = data.get("targets") or {}
        if not isinstance(raw_targets, dict):
            raise ValueError("generation result targets must be an object")
        for name, item in raw_targets.items():
            if not isinstance(item, dict):
                raise ValueError(f"generation result target {name} must be an object")
            entry = cast(dict[str, object], item)
            targets[str(name)] = TargetResult(
                language=str(entry.get("language") or name),
                directory=str(entry.get("directory") or "."),
                regenerated=bool(entry.get("regenerated", False)),
                publish=bool(entry.get("publish", False)),
                package_name=str(entry.get("package_name") or ""),
                version=str(entry.get("version") or ""),
                release_notes=str(entry.get("release_notes") or ""),
            )
        return cls(
            speakeasy_version=str(data.get("speakeasy_version") or ""),
            generation_version=str(data.get("generation_version") or ""),
            openapi_doc_version=str(data.get("openapi_doc_version") or ""),
            openapi_doc_location=str(data.get("openapi_doc_location") or ""),
            has_testing_enabled=bool(data.get("has_testing_enabled", False)),
            targets=targets,
            version_report=MergedVersionReport.from_dict(data.get("version_report")),
            linting_report_url=str(data.get("linting_report_url") or ""),
            changes_report_url=str(data.get("changes_report_url") or ""),
            openapi_change_summary=str(data.get("openapi_change_summary") or ""),
            previous_gen_version=str(data.get("previous_gen_version") or ""),
            sources_only=bool(data.get("sources_only", False)),
        )

    @property
    def regenerated_targets(self) -> dict[str, TargetResult]:
        return {name: target for name, target in self.targets.items() if target.regenerated}

    @property
    def any_regenerated(self) -> bool:
        return bool(self.regenerated_targets) or self.sources_only

    def release_notes(self) -> dict[str, str]:
        return {
            target.language: target.release_notes
            for target in self.regenerated_targets.values()
            if target.release_notes
        }

    def releases_info(self, *, title: str, doc_location: str) -> ReleasesInfo:
        languages: dict[str, LanguageReleaseInfo] = {}
        generated: dict[str, GenerationInfo] = {}
        for target in self.regenerated_targets.values():
            generated[target.language] = GenerationInfo(version=target.version, path=target.directory)
            if target.package_name:
                languages[target.language] = LanguageReleaseInfo(
                    package_name=target.package_name,
                    path=target.directory,
                    version=target.version,
                )
        return ReleasesInfo(
            release_title=title,
            doc_version=self.openapi_doc_version,
            speakeasy_version=self.speakeasy_version,
            generation_version=self.generation_version,
            doc_location=doc_location,
            languages=languages,
            languages_generated=generated,
        )

    def target_report(self, target: str, *, manual_bump: bool) -> TargetGenerationReport:
        return TargetGenerationReport(
            target=target,
            version_report=self.version_report,
            linting_report_url=self.linting_report_url,
            changes_report_url=self.changes_report_url,
            openapi_change_summary=self.openapi_change_summary,
            speakeasy_version=self.speakeasy_version,
            manual_bump=manual_bump,
        )


@dataclass(frozen=True)
class GenerationRequest:
    branch: str
    target: str = ""
    bump: BumpDecision | None = None
    force: bool = False
    set_version: str = ""
    skip_testing: bool = False


@dataclass
class ExternalGenerator:
    commands: CommandsConfig
    root: Path

    @property
    def result_path(self) -> Path:
        return self.root / self.commands.result_path

    def generate(self, request: GenerationRequest) -> GenerationResult:
        env = {
            "REGENFLOW_RESULT_PATH": str(self.result_path),
            "SPEAKEASY_ACTIVE_BRANCH": request.branch,
            "SPEAKEASY_TARGET": request.target or "all",
            "SPEAKEASY_FORCE": "true" if request.force else "false",
            "SPEAKEASY_SKIP_TESTING": "true" if request.skip_testing else "false",
        }
        if request.bump is not None and request.bump.applies:
            env["SPEAKEASY_BUMP_TYPE"] = request.bump.bump_type
        if request.set_version:
            env["SPEAKEASY_SET_VERSION"] = request.set_version
        self.result_path.unlink(missing_ok=True)
        log_event(LOGGER, "generation_started", branch=request.branch, target=request.target or "all")
        run_streaming(list(self.commands.generate), cwd=self.root, env=env)
        return self._read_result()

    def suggest(self, *, output_path: str) -> str:
        """Run the suggestion command and return its output for PR comments."""
        return run(
            list(self.commands.suggest),
            cwd=self.root,
            env={"SPEAKEASY_SUGGEST_OUTPUT": output_path},
        )

    def test(self, target: str) -> None:
        run_streaming([*self.commands.test, "--target", target], cwd=self.root)

    def _read_result(self) -> GenerationResult:
        try:
            raw = self.result_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise GenerationError(f"generator did not write a result to {self.result_path}") from exc
        try:
            result = GenerationResult.from_json(raw)
        except ValueError as exc:
            raise GenerationError(f"invalid generation result in {self.result_path}: {exc}") from exc
        log_event(
            LOGGER,
            "generation_finished",
            regenerated=",".join(sorted(result.regenerated_targets)),
            speakeasy_version=result.speakeasy_version,
        )
        return result
