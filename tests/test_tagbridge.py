from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from regenflow.config import ConfigError, PlatformConfig
from regenflow.releases import LanguageReleaseInfo
from regenflow.run_context import RunContext
from regenflow.tagbridge import (
    RegistryClient,
    RegistryError,
    Revision,
    branch_tags,
    get_revisions,
    promote,
    tagging_scope,
)
from regenflow.workflow import (
    LockedSource,
    LockedTarget,
    Workflow,
    WorkflowLock,
    WorkflowSource,
    WorkflowTarget,
)


WORKFLOW = Workflow(
    sources={
        "petstore": WorkflowSource("petstore", registry_location="registry/acme/petstore"),
        "internal": WorkflowSource("internal"),
    },
    targets={
        "go-sdk": WorkflowTarget(
            "go-sdk",
            target="go",
            source="petstore",
            output="./go",
            publishing=True,
            code_samples_registry="registry/acme/go-samples",
        ),
        "py-sdk": WorkflowTarget("py-sdk", target="python", source="petstore", output="./python"),
        "ts": WorkflowTarget("ts", target="typescript", source="internal"),
    },
)

LOCK = WorkflowLock(
    sources={
        "petstore": LockedSource("petstore", namespace="petstore", revision_digest="sha256:aa"),
        "internal": LockedSource("internal", namespace="internal", revision_digest=""),
    },
    targets={
        "go-sdk": LockedTarget(
            "go-sdk",
            source="petstore",
            code_samples_namespace="go-samples",
            code_samples_revision_digest="sha256:bb",
        ),
        "py-sdk": LockedTarget(
            "py-sdk",
            source="petstore",
            code_samples_namespace="petstore",
            code_samples_revision_digest="sha256:aa",
        ),
    },
)


def test_get_revisions_dedupes_shared_digests() -> None:
    revisions = get_revisions(["petstore"], ["go-sdk", "py-sdk"], WORKFLOW, LOCK)
    assert revisions == [
        Revision("petstore", "sha256:aa", ("petstore", "py-sdk")),
        Revision("go-samples", "sha256:bb", ("go-sdk",)),
    ]


def test_get_revisions_skips_missing_digest() -> None:
    assert get_revisions(["internal"], [], WORKFLOW, LOCK) == []


@pytest.mark.parametrize(
    "sources,targets,message",
    [
        ([], [], "please specify at least one source or target"),
        (["nope"], [], "source nope not found in workflow.yaml. Options: internal, petstore"),
        (["petstore"], ["nope"], "target nope not found in workflow.yaml"),
        ([], ["ts"], "target ts not found in workflow.lock"),
    ],
)
def test_get_revisions_errors(sources: list[str], targets: list[str], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        get_revisions(sources, targets, WORKFLOW, LOCK)


def test_get_revisions_requires_locked_source() -> None:
    lock = WorkflowLock(sources={}, targets={})
    with pytest.raises(ConfigError, match="execute `speakeasy run` before adding tags"):
        get_revisions(["petstore"], [], WORKFLOW, lock)


def test_branch_tags() -> None:
    assert branch_tags("main", published=True) == ["main", "published"]
    assert branch_tags("feat/new_api", published=False) == ["feat-new-api"]


def test_tagging_scope_for_explicit_target(tmp_path: Path) -> None:
    ctx = RunContext(workspace=tmp_path, target="go-sdk")
    assert tagging_scope(WORKFLOW, ctx, {}) == (["petstore"], ["go-sdk"], True)
    unknown = RunContext(workspace=tmp_path, target="missing")
    assert tagging_scope(WORKFLOW, unknown, {}) == ([], [], False)


def test_tagging_scope_matches_release_paths(tmp_path: Path) -> None:
    ctx = RunContext(workspace=tmp_path)
    latest = {
        "python": LanguageReleaseInfo(package_name="acme", path="python", version="1.0.0"),
        "typescript": LanguageReleaseInfo(package_name="acme", path=".", version="2.0.0"),
        "go": LanguageReleaseInfo(package_name="acme", path="elsewhere", version="1.0.0"),
    }
    assert tagging_scope(WORKFLOW, ctx, latest) == (["petstore"], [], False)


def test_tagging_scope_honours_working_directory(tmp_path: Path) -> None:
    ctx = RunContext(workspace=tmp_path, working_directory="sdks")
    latest = {"go": LanguageReleaseInfo(package_name="acme", path="sdks/go", version="1.0.0")}
    assert tagging_scope(WORKFLOW, ctx, latest) == (["petstore"], ["go-sdk"], True)


def _transport(seen: list[httpx.Request], status: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status, json={})

    return httpx.MockTransport(handler)


def test_registry_client_posts_tags() -> None:
    seen: list[httpx.Request] = []
    platform = PlatformConfig(api_url="https://api.example.test")
    with RegistryClient("key-1", platform, transport=_transport(seen)) as client:
        revisions = promote(
            client, ["main"], ["petstore"], ["go-sdk"], workflow=WORKFLOW, lock=LOCK
        )
        client.trigger_empty_commit(org="acme", repo="sdk", branch="speakeasy-sdk-regen-1")

    assert [r.namespace for r in revisions] == ["petstore", "go-samples"]
    assert [str(r.url) for r in seen] == [
        "https://api.example.test/v1/artifacts/namespaces/petstore/tags",
        "https://api.example.test/v1/artifacts/namespaces/go-samples/tags",
        "https://api.example.test/v1/github/empty_commit",
    ]
    assert seen[0].headers["x-api-key"] == "key-1"
    assert json.loads(seen[0].content) == {"revision_digest": "sha256:aa", "tags": ["main"]}
    assert json.loads(seen[2].content) == {
        "branch": "speakeasy-sdk-regen-1",
        "org": "acme",
        "repo_name": "sdk",
    }


def test_registry_client_raises_on_error_status() -> None:
    seen: list[httpx.Request] = []
    with RegistryClient("key", transport=_transport(seen, status=500)) as client:
        with pytest.raises(RegistryError, match="status code: 500"):
            client.add_tags("ns", "sha256:aa", ["main"])


def test_registry_client_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with RegistryClient("key", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(RegistryError, match="error making the API request"):
            client.add_tags("ns", "sha256:aa", ["main"])


def test_registry_client_requires_key_and_context() -> None:
    with pytest.raises(ConfigError, match="SPEAKEASY_API_KEY"):
        with RegistryClient(""):
            pass
    with pytest.raises(RuntimeError, match="context manager"):
        RegistryClient("key").add_tags("ns", "d", ["t"])
