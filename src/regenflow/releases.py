"""The RELEASES.md ledger.

Each run appends one block. The block layout is parsed back with the regular
expressions below, so :meth:`ReleasesInfo.render` and :func:`parse_releases`
must change together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
from typing import Final

from regenflow.observability import log_event


LOGGER = logging.getLogger("regenflow.releases")

RELEASES_FILE: Final[str] = "RELEASES.md"
CLI_URL: Final[str] = "https://github.com/speakeasy-api/speakeasy"

_SEMVER: Final[str] = r"\d+\.\d+\.\d+(?:-\w+(?:\.\w+)*)?"

_RELEASE_INFO_RE = re.compile(
    r"(?s)## (.*?)\n### Changes\nBased on:\n- OpenAPI Doc (.*?) (.*?)\n- Speakeasy CLI (.*?) (\((.*?)\))?.*?"
)
_GENERATED_RE = re.compile(r"- \[([a-z]+) v(" + _SEMVER + r")] (.*)")
_NPM_RE = re.compile(
    r"- \[NPM v(" + _SEMVER + r")] (https://www\.npmjs\.com/package/(.*?)/v/" + _SEMVER + r") - (.*)"
)
_PYPI_RE = re.compile(
    r"- \[PyPI v(\d+\.\d+\.\d+(?:-?\w+(?:\.\w+)*)?)] "
    r"(https://pypi\.org/project/(.*?)/\d+\.\d+\.\d+(?:-?\w+(?:\.\w+)*)?) - (.*)"
)
_GO_RE = re.compile(
    r"- \[Go v(" + _SEMVER + r")] (https://(github.com/.*?)/releases/tag/.*?/?v" + _SEMVER + r") - (.*)"
)
_COMPOSER_RE = re.compile(
    r"- \[Composer v(" + _SEMVER + r")] (https://packagist\.org/packages/(.*?)#v" + _SEMVER + r") - (.*)"
)
_MAVEN_RE = re.compile(
    r"- \[Maven Central v(" + _SEMVER + r")] (https://central\.sonatype\.com/artifact/(.*?)/(.*?)/.*?) - (.*)"
)
_TERRAFORM_RE = re.compile(
    r"- \[Terraform v(" + _SEMVER + r")] (https://registry\.terraform\.io/providers/(.*?)/(.*?)/.*?) - (.*)"
)
_RUBY_RE = re.compile(
    r"- \[Ruby Gems v(" + _SEMVER + r")] (https://rubygems\.org/gems/(.*?)/versions/.*?) - (.*)"
)
_NUGET_RE = re.compile(
    r"- \[NuGet v(" + _SEMVER + r")] (https://www\.nuget\.org/packages/(.*?)/" + _SEMVER + r") - (.*)"
)
_SWIFT_RE = re.compile(
    r"- \[Swift Package Manager v(" + _SEMVER + r")] "
    r"(https://(github.com/.*?)/releases/tag/.*?/?v" + _SEMVER + r") - (.*)"
)
_PRERELEASE_RE = re.compile(r"^v?\d+(?:\.\d+)*(?:-|[a-zA-Z])")

# language -> label used in the "### Releases" section
PACKAGE_REGISTRIES: Final[dict[str, str]] = {
    "go": "Go",
    "typescript": "NPM",
    "python": "PyPI",
    "php": "Composer",
    "terraform": "Terraform",
    "java": "Maven Central",
    "ruby": "Ruby Gems",
    "csharp": "NuGet",
    "swift": "Swift Package Manager",
}


class ReleasesParseError(ValueError):
    pass


@dataclass(frozen=True)
class LanguageReleaseInfo:
    package_name: str
    path: str
    version: str
    previous_version: str = ""
    url: str = ""

    @property
    def is_prerelease(self) -> bool:
        return bool(_PRERELEASE_RE.match(self.version))

    @property
    def tag_name(self) -> str:
        tag = f"v{self.version}"
        if self.path and self.path != ".":
            tag = f"{self.path.removeprefix('./')}/{tag}"
        return tag


@dataclass(frozen=True)
class GenerationInfo:
    version: str
    path: str


@dataclass(frozen=True)
class ReleasesInfo:
    release_title: str
    doc_version: str
    speakeasy_version: str
    generation_version: str
    doc_location: str
    languages: dict[str, LanguageReleaseInfo] = field(default_factory=dict)
    languages_generated: dict[str, GenerationInfo] = field(default_factory=dict)

    def render(self, repository: str) -> str:
        generation_output = [
            f"- [{lang} v{info.version}] {info.path}"
            for lang, info in sorted(self.languages_generated.items())
        ]
        if generation_output:
            generation_output.insert(0, "\n### Generated")

        releases_output: list[str] = []
        for lang, info in sorted(self.languages.items()):
            registry = PACKAGE_REGISTRIES.get(lang)
            if registry is None:
                continue
            url = package_url(lang, info, repository)
            releases_output.append(f"- [{registry} v{info.version}] {url} - {info.path}")
        if releases_output:
            releases_output.insert(0, "\n### Releases")

        return (
            f"\n\n## {self.release_title}\n"
            "### Changes\n"
            "Based on:\n"
            f"- OpenAPI Doc {self.doc_version} {self.doc_location}\n"
            f"- Speakeasy CLI {self.speakeasy_version} ({self.generation_version}) {CLI_URL}"
            + "\n".join(generation_output)
            + "\n".join(releases_output)
        )


def package_url(language: str, info: LanguageReleaseInfo, repository: str) -> str:
    version = info.version
    name = info.package_name
    if language in {"go", "swift"}:
        return f"https://github.com/{repository}/releases/tag/{info.tag_name}"
    if language == "typescript":
        return f"https://www.npmjs.com/package/{name}/v/{version}"
    if language == "python":
        return f"https://pypi.org/project/{name}/{version}"
    if language == "php":
        return f"https://packagist.org/packages/{name}#v{version}"
    if language == "terraform":
        return f"https://registry.terraform.io/providers/{name}/{version}"
    if language == "java":
        group_id, _, artifact_id = name.rpartition(".")
        return f"https://central.sonatype.com/artifact/{group_id}/{artifact_id}/{version}"
    if language == "ruby":
        return f"https://rubygems.org/gems/{name}/versions/{version}"
    if language == "csharp":
        return f"https://www.nuget.org/packages/{name}/{version}"
    return ""


def parse_releases(data: str) -> ReleasesInfo:
    blocks = data.split("\n\n")
    last = blocks[-1]
    previous = blocks[-2] if len(blocks) > 1 else None

    match = _RELEASE_INFO_RE.search(last)
    if match is None:
        raise ReleasesParseError("error parsing last release info")

    languages: dict[str, LanguageReleaseInfo] = {}
    generated = {
        m.group(1): GenerationInfo(version=m.group(2), path=m.group(3))
        for m in _GENERATED_RE.finditer(last)
    }

    simple = (
        ("typescript", _NPM_RE),
        ("python", _PYPI_RE),
        ("php", _COMPOSER_RE),
        ("ruby", _RUBY_RE),
        ("csharp", _NUGET_RE),
    )
    for language, pattern in simple:
        m = pattern.search(last)
        if m is not None:
            languages[language] = LanguageReleaseInfo(
                version=m.group(1), url=m.group(2), package_name=m.group(3), path=m.group(4)
            )

    for language, pattern in (("go", _GO_RE), ("swift", _SWIFT_RE)):
        m = pattern.search(last)
        if m is not None:
            package_name, path = m.group(3), m.group(4)
            if path != ".":
                package_name = f"{package_name}/{path.removeprefix('./')}"
            languages[language] = LanguageReleaseInfo(
                version=m.group(1), url=m.group(2), package_name=package_name, path=path
            )

    m = _MAVEN_RE.search(last)
    if m is not None:
        languages["java"] = LanguageReleaseInfo(
            version=m.group(1),
            url=m.group(2),
            package_name=f"{m.group(3)}.{m.group(4)}",
            path=m.group(5),
        )

    m = _TERRAFORM_RE.search(last)
    if m is not None:
        previous_version = ""
        if previous is not None:
            prior = _TERRAFORM_RE.search(previous)
            if prior is not None:
                previous_version = prior.group(1)
        languages["terraform"] = LanguageReleaseInfo(
            version=m.group(1),
            url=m.group(2),
            package_name=f"{m.group(3)}/{m.group(4)}",
            path=m.group(5),
            previous_version=previous_version,
        )

    return ReleasesInfo(
        release_title=match.group(1),
        doc_version=match.group(2),
        doc_location=match.group(3),
        speakeasy_version=match.group(4),
        generation_version=match.group(6) or "",
        languages=languages,
        languages_generated=generated,
    )


def releases_path(root: Path, directory: str) -> Path:
    return root / directory / RELEASES_FILE


def update_releases_file(root: Path, directory: str, info: ReleasesInfo, *, repository: str) -> Path:
    path = releases_path(root, directory)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.write(info.render(repository))
    log_event(LOGGER, "releases_file_updated", path=str(path), languages=len(info.languages))
    return path


def read_last_release(root: Path, directory: str) -> ReleasesInfo:
    path = releases_path(root, directory)
    try:
        data = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ReleasesParseError(f"error reading releases file: {exc}") from exc
    return parse_releases(data)
