from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import cast


DEFAULT_CONFIG_PATH = Path("regenflow.toml")


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class BranchPrefixes:
    sdk_regen: str = "speakeasy-sdk-regen"
    docs_regen: str = "speakeasy-sdk-docs-regen"
    suggestion: str = "speakeasy-openapi-suggestion"
    fanout: str = "speakeasy-fanout"


@dataclass(frozen=True)
class AutomationConfig:
    identities: frozenset[str] = frozenset(
        {"speakeasy-github[bot]", "speakeasybot", "speakeasy-bot", "github-actions[bot]"}
    )
    bot_name: str = "speakeasybot"
    bot_email: str = "bot@speakeasyapi.dev"

    def is_automation(self, name: str) -> bool:
        normalized = name.strip().lower()
        if not normalized:
            return False
        return normalized in self.identities


@dataclass(frozen=True)
class PushConfig:
    attempts: int = 3


@dataclass(frozen=True)
class CommandsConfig:
    generate: tuple[str, ...] = ("speakeasy", "run")
    suggest: tuple[str, ...] = ("speakeasy", "suggest")
    test: tuple[str, ...] = ("speakeasy", "test")
    result_path: str = ".speakeasy/regenflow-result.json"


@dataclass(frozen=True)
class PlatformConfig:
    api_url: str = "https://api.speakeasy.com"
    timeout_seconds: int = 30


@dataclass(frozen=True)
class EngineConfig:
    branches: BranchPrefixes = field(default_factory=BranchPrefixes)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    push: PushConfig = field(default_factory=PushConfig)
    commands: CommandsConfig = field(default_factory=CommandsConfig)
    platform: PlatformConfig = field(default_factory=PlatformConfig)


def load_config(path: Path | None) -> EngineConfig:
    """Load engine settings from TOML; a missing default file means built-in defaults."""
    config_path = path or DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if path is not None and path != DEFAULT_CONFIG_PATH:
            raise ConfigError(f"config file not found: {config_path}")
        return EngineConfig()

    try:
        with config_path.open("rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML in {config_path}: {exc}") from exc

    defaults = EngineConfig()
    branches_data = _optional_table(data, "branches") or {}
    automation_data = _optional_table(data, "automation") or {}
    push_data = _optional_table(data, "push") or {}
    commands_data = _optional_table(data, "commands") or {}
    platform_data = _optional_table(data, "platform") or {}

    branches = BranchPrefixes(
        sdk_regen=_str_with_default(branches_data, "sdk_regen", defaults.branches.sdk_regen),
        docs_regen=_str_with_default(branches_data, "docs_regen", defaults.branches.docs_regen),
        suggestion=_str_with_default(branches_data, "suggestion", defaults.branches.suggestion),
        fanout=_str_with_default(branches_data, "fanout", defaults.branches.fanout),
    )
    automation = AutomationConfig(
        identities=_identities_with_default(
            automation_data, "identities", defaults.automation.identities
        ),
        bot_name=_str_with_default(automation_data, "bot_name", defaults.automation.bot_name),
        bot_email=_str_with_default(automation_data, "bot_email", defaults.automation.bot_email),
    )
    push = PushConfig(attempts=_int_with_default(push_data, "attempts", defaults.push.attempts))
    if push.attempts < 1:
        raise ConfigError("push.attempts must be >= 1")

    commands = CommandsConfig(
        generate=_argv_with_default(commands_data, "generate", defaults.commands.generate),
        suggest=_argv_with_default(commands_data, "suggest", defaults.commands.suggest),
        test=_argv_with_default(commands_data, "test", defaults.commands.test),
        result_path=_str_with_default(
            commands_data, "result_path", defaults.commands.result_path
        ),
    )
    platform = PlatformConfig(
        api_url=_str_with_default(platform_data, "api_url", defaults.platform.api_url).rstrip("/"),
        timeout_seconds=_int_with_default(
            platform_data, "timeout_seconds", defaults.platform.timeout_seconds
        ),
    )
    if platform.timeout_seconds < 1:
        raise ConfigError("platform.timeout_seconds must be >= 1")

    return EngineConfig(
        branches=branches,
        automation=automation,
        push=push,
        commands=commands,
        platform=platform,
    )


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _argv_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    argv = _tuple_of_str(data, key)
    if not argv:
        raise ConfigError(f"{key} must contain at least one argument")
    return argv


def _identities_with_default(
    data: dict[str, object], key: str, default: frozenset[str]
) -> frozenset[str]:
    if key not in data:
        return default
    out: set[str] = set()
    for item in _tuple_of_str(data, key):
        normalized = item.strip().lower()
        if not normalized:
            raise ConfigError(f"{key} entries must be non-empty strings")
        out.add(normalized)
    if not out:
        raise ConfigError(f"{key} must contain at least one identity")
    return frozenset(out)
