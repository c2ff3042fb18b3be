from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from regenflow.config import ConfigError


WORKFLOW_FILE = Path(".speakeasy") / "workflow.yaml"
LOCK_FILE = Path(".speakeasy") / "workflow.lock"


@dataclass(frozen=True)
class WorkflowSource:
    name: str
    registry_location: str = ""


@dataclass(frozen=True)
class WorkflowTarget:
    name: str
    target: str
    source: str
    output: str = ""
    publishing: bool = False
    code_samples_registry: str = ""


@dataclass(frozen=True)
class Workflow:
    sources: dict[str, WorkflowSource]
    targets: dict[str, WorkflowTarget]

    def target_for(self, name: str) -> WorkflowTarget:
        target = self.targets.get(name)
        if target is None:
            raise ConfigError(f"target {name} not found in workflow.yaml")
        return target


@dataclass(frozen=True)
class LockedSource:
    name: str
    namespace: str
    revision_digest: str


@dataclass(frozen=True)
class LockedTarget:
    name: str
    source: str
    code_samples_namespace: str
    code_samples_revision_digest: str


@dataclass(frozen=True)
class WorkflowLock:
    sources: dict[str, LockedSource]
    targets: dict[str, LockedTarget]


def load_workflow(root: Path) -> Workflow:
    data = _load_yaml(root / WORKFLOW_FILE, missing_ok=False)
    sources: dict[str, WorkflowSource] = {}
    for name, raw in _mapping(data.get("sources"), "sources").items():
        source = _mapping(raw, f"sources.{name}")
        registry = _mapping(source.get("registry"), f"sources.{name}.registry")
        sources[name] = WorkflowSource(name=name, registry_location=_str(registry.get("location")))

    targets: dict[str, WorkflowTarget] = {}
    for name, raw in _mapping(data.get("targets"), "targets").items():
        target = _mapping(raw, f"targets.{name}")
        language = _str(target.get("target"))
        if not language:
            raise ConfigError(f"targets.{name}.target is required in workflow.yaml")
        code_samples = _mapping(target.get("codeSamples"), f"targets.{name}.codeSamples")
        code_samples_registry = _mapping(
            code_samples.get("registry"), f"targets.{name}.codeSamples.registry"
        )
        publish = target.get("publish")
        targets[name] = WorkflowTarget(
            name=name,
            target=language,
            source=_str(target.get("source")),
            output=_str(target.get("output")),
            publishing=isinstance(publish, dict) and bool(publish),
            code_samples_registry=_str(code_samples_registry.get("location")),
        )
    return Workflow(sources=sources, targets=targets)


def load_lock(root: Path) -> WorkflowLock:
    data = _load_yaml(root / LOCK_FILE, missing_ok=True)
    sources: dict[str, LockedSource] = {}
    for name, raw in _mapping(data.get("sources"), "sources").items():
        source = _mapping(raw, f"sources.{name}")
        sources[name] = LockedSource(
            name=name,
            namespace=_str(source.get("sourceNamespace")),
            revision_digest=_str(source.get("sourceRevisionDigest")),
        )

    targets: dict[str, LockedTarget] = {}
    for name, raw in _mapping(data.get("targets"), "targets").items():
        target = _mapping(raw, f"targets.{name}")
        targets[name] = LockedTarget(
            name=name,
            source=_str(target.get("source")),
            code_samples_namespace=_str(target.get("codeSamplesNamespace")),
            code_samples_revision_digest=_str(target.get("codeSamplesRevisionDigest")),
        )
    return WorkflowLock(sources=sources, targets=targets)


def _load_yaml(path: Path, *, missing_ok: bool) -> dict[str, object]:
    if not path.exists():
        if missing_ok:
            return {}
        raise ConfigError(f"workflow file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse {path}: {exc}") from exc
    if data is None:
        return {}
    return _mapping(data, path.name)


def _mapping(value: object, where: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    return {str(key): item for key, item in cast(dict[object, object], value).items()}


def _str(value: object) -> str:
    if value is None:
        return ""
    return str(value)
