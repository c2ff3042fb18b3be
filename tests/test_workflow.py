from __future__ import annotations

from pathlib import Path

import pytest

from regenflow.config import ConfigError
from regenflow.workflow import load_lock, load_workflow


WORKFLOW = """
workflowVersion: 1.0.0
sources:
  petstore:
    inputs:
      - location: ./openapi.yaml
    registry:
      location: registry.speakeasyapi.dev/acme/acme/petstore
  internal:
    inputs:
      - location: ./internal.yaml
targets:
  go-sdk:
    target: go
    source: petstore
    output: ./go
    publish:
      go: {}
    codeSamples:
      registry:
        location: registry.speakeasyapi.dev/acme/acme/go-code-samples
  ts:
    target: typescript
    source: internal
"""

LOCK = """
sources:
  petstore:
    sourceNamespace: petstore
    sourceRevisionDigest: sha256:aaa
targets:
  go-sdk:
    source: petstore
    codeSamplesNamespace: go-code-samples
    codeSamplesRevisionDigest: sha256:bbb
"""


def _write(root: Path, name: str, content: str) -> None:
    path = root / ".speakeasy" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_load_workflow_reads_sources_and_targets(tmp_path: Path) -> None:
    _write(tmp_path, "workflow.yaml", WORKFLOW)

    workflow = load_workflow(tmp_path)

    assert workflow.sources["petstore"].registry_location.endswith("/petstore")
    assert workflow.sources["internal"].registry_location == ""
    go = workflow.target_for("go-sdk")
    assert go.target == "go"
    assert go.output == "./go"
    assert go.publishing
    assert go.code_samples_registry.endswith("go-code-samples")
    ts = workflow.targets["ts"]
    assert ts.output == ""
    assert not ts.publishing
    with pytest.raises(ConfigError, match="target python not found"):
        workflow.target_for("python")


def test_load_workflow_requires_the_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="workflow file not found"):
        load_workflow(tmp_path)


def test_load_workflow_requires_target_language(tmp_path: Path) -> None:
    _write(tmp_path, "workflow.yaml", "targets:\n  x:\n    source: s\n")
    with pytest.raises(ConfigError, match="targets.x.target is required"):
        load_workflow(tmp_path)


def test_load_workflow_rejects_malformed_yaml(tmp_path: Path) -> None:
    _write(tmp_path, "workflow.yaml", "targets: [unclosed\n")
    with pytest.raises(ConfigError, match="failed to parse"):
        load_workflow(tmp_path)


def test_load_workflow_rejects_non_mapping_sections(tmp_path: Path) -> None:
    _write(tmp_path, "workflow.yaml", "sources:\n  - a\n")
    with pytest.raises(ConfigError, match="sources must be a mapping"):
        load_workflow(tmp_path)


def test_load_lock_reads_digests_and_tolerates_missing_file(tmp_path: Path) -> None:
    assert load_lock(tmp_path).sources == {}

    _write(tmp_path, "workflow.lock", LOCK)
    lock = load_lock(tmp_path)

    assert lock.sources["petstore"].namespace == "petstore"
    assert lock.sources["petstore"].revision_digest == "sha256:aaa"
    assert lock.targets["go-sdk"].code_samples_namespace == "go-code-samples"
    assert lock.targets["go-sdk"].code_samples_revision_digest == "sha256:bbb"
