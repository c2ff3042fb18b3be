from __future__ import annotations

from pathlib import Path

import pytest

from regenflow.config import ConfigError, EngineConfig, load_config


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_missing_default_file_yields_defaults(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.chdir(tmp_path)

    cfg = load_config(None)

    assert cfg == EngineConfig()
    assert cfg.push.attempts == 3
    assert cfg.branches.sdk_regen == "speakeasy-sdk-regen"
    assert cfg.commands.generate == ("speakeasy", "run")


def test_load_config_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="config file not found"):
        load_config(tmp_path / "nope.toml")


def test_load_config_reads_all_tables(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "regenflow.toml",
        """
[branches]
sdk_regen = "acme-sdk-regen"
fanout = "acme-fanout"

[automation]
identities = ["Acme-Bot", "github-actions[bot]"]
bot_name = "acmebot"
bot_email = "bot@acme.dev"

[push]
attempts = 5

[commands]
generate = ["make", "sdk"]
result_path = "out/result.json"

[platform]
api_url = "https://api.acme.dev/"
timeout_seconds = 10
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.branches.sdk_regen == "acme-sdk-regen"
    assert cfg.branches.docs_regen == "speakeasy-sdk-docs-regen"
    assert cfg.branches.fanout == "acme-fanout"
    assert cfg.automation.identities == frozenset({"acme-bot", "github-actions[bot]"})
    assert cfg.automation.is_automation("ACME-BOT")
    assert not cfg.automation.is_automation("")
    assert cfg.automation.bot_email == "bot@acme.dev"
    assert cfg.push.attempts == 5
    assert cfg.commands.generate == ("make", "sdk")
    assert cfg.commands.suggest == ("speakeasy", "suggest")
    assert cfg.commands.result_path == "out/result.json"
    assert cfg.platform.api_url == "https://api.acme.dev"
    assert cfg.platform.timeout_seconds == 10


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("[push]\nattempts = 0\n", "push.attempts must be >= 1"),
        ("[push]\nattempts = true\n", "attempts must be an integer"),
        ("push = 3\n", r"\[push\] must be a TOML table"),
        ("[commands]\ngenerate = []\n", "generate must contain at least one argument"),
        ("[commands]\ngenerate = [1]\n", "generate must be a list of strings"),
        ("[automation]\nidentities = [\" \"]\n", "identities entries must be non-empty"),
        ("[branches]\nsdk_regen = \"\"\n", "sdk_regen must be a non-empty string"),
        ("[platform]\ntimeout_seconds = 0\n", "timeout_seconds must be >= 1"),
        ("not toml = = =\n", "invalid TOML"),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, content: str, message: str) -> None:
    cfg_path = _write(tmp_path / "regenflow.toml", content)

    with pytest.raises(ConfigError, match=message):
        load_config(cfg_path)
