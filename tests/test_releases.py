from __future__ import annotations

from pathlib import Path

import pytest

from regenflow.releases import (
    GenerationInfo,
    LanguageReleaseInfo,
    ReleasesInfo,
    ReleasesParseError,
    parse_releases,
    read_last_release,
    releases_path,
    update_releases_file,
)


REPOSITORY = "acme/sdk"


def _info(title: str, languages: dict[str, LanguageReleaseInfo]) -> ReleasesInfo:
    return ReleasesInfo(
        release_title=title,
        doc_version="1.0.0",
        speakeasy_version="1.400.0",
        generation_version="2.500.0",
        doc_location="./openapi.yaml",
        languages=languages,
        languages_generated={
            lang: GenerationInfo(version=info.version, path=info.path)
            for lang, info in languages.items()
        },
    )


def test_render_and_parse_multi_language_block(tmp_path: Path) -> None:
    info = _info(
        "2026-03-01 12:00:00",
        {
            "go": LanguageReleaseInfo(package_name="github.com/acme/sdk/go", path="go", version="1.2.0"),
            "typescript": LanguageReleaseInfo(package_name="@acme/sdk", path="ts", version="0.4.0"),
            "python": LanguageReleaseInfo(package_name="acme-sdk", path="python", version="2.0.0-rc.1"),
            "terraform": LanguageReleaseInfo(package_name="acme/acme", path=".", version="0.9.0"),
        },
    )

    update_releases_file(tmp_path, ".", info, repository=REPOSITORY)
    parsed = read_last_release(tmp_path, ".")

    assert parsed.release_title == "2026-03-01 12:00:00"
    assert parsed.doc_version == "1.0.0"
    assert parsed.doc_location == "./openapi.yaml"
    assert parsed.speakeasy_version == "1.400.0"
    assert parsed.generation_version == "2.500.0"
    assert set(parsed.languages) == {"go", "typescript", "python", "terraform"}

    go = parsed.languages["go"]
    assert go.version == "1.2.0"
    assert go.path == "go"
    assert go.package_name == "github.com/acme/sdk/go"
    assert go.url == "https://github.com/acme/sdk/releases/tag/go/v1.2.0"
    assert go.tag_name == "go/v1.2.0"

    ts = parsed.languages["typescript"]
    assert ts.package_name == "@acme/sdk"
    assert ts.url == "https://www.npmjs.com/package/@acme/sdk/v/0.4.0"

    py = parsed.languages["python"]
    assert py.version == "2.0.0-rc.1"
    assert py.is_prerelease
    assert py.package_name == "acme-sdk"

    tf = parsed.languages["terraform"]
    assert tf.package_name == "acme/acme"
    assert tf.tag_name == "v0.9.0"
    assert not tf.is_prerelease

    assert parsed.languages_generated["go"] == GenerationInfo(version="1.2.0", path="go")


def test_parse_uses_last_block_and_terraform_previous_version(tmp_path: Path) -> None:
    tf = LanguageReleaseInfo(package_name="acme/acme", path=".", version="0.9.0")
    update_releases_file(tmp_path, "tf", _info("first", {"terraform": tf}), repository=REPOSITORY)
    newer = LanguageReleaseInfo(package_name="acme/acme", path=".", version="0.10.0")
    update_releases_file(tmp_path, "tf", _info("second", {"terraform": newer}), repository=REPOSITORY)

    parsed = read_last_release(tmp_path, "tf")

    assert releases_path(tmp_path, "tf").exists()
    assert parsed.release_title == "second"
    assert parsed.languages["terraform"].version == "0.10.0"
    assert parsed.languages["terraform"].previous_version == "0.9.0"


def test_java_and_csharp_entries() -> None:
    rendered = _info(
        "java",
        {
            "java": LanguageReleaseInfo(package_name="dev.acme.sdk", path="java", version="3.1.0"),
            "csharp": LanguageReleaseInfo(package_name="Acme.Sdk", path="cs", version="1.0.1"),
        },
    ).render(REPOSITORY)

    assert "- [Maven Central v3.1.0] https://central.sonatype.com/artifact/dev.acme/sdk/3.1.0 - java" in rendered
    parsed = parse_releases(rendered)
    assert parsed.languages["java"].package_name == "dev.acme.sdk"
    assert parsed.languages["csharp"].url == "https://www.nuget.org/packages/Acme.Sdk/1.0.1"


def test_parse_rejects_unrecognised_content(tmp_path: Path) -> None:
    with pytest.raises(ReleasesParseError, match="error parsing last release info"):
        parse_releases("just some notes")
    with pytest.raises(ReleasesParseError, match="error reading releases file"):
        read_last_release(tmp_path, "missing")
