from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
import logging
import os
from types import TracebackType

import httpx

from regenflow.config import ConfigError, PlatformConfig
from regenflow.observability import log_event
from regenflow.releases import LanguageReleaseInfo
from regenflow.run_context import RunContext, sanitize_branch_name
from regenflow.workflow import Workflow, WorkflowLock


LOGGER = logging.getLogger("regenflow.tagbridge")

PUBLISHED_TAG = "published"


class RegistryError(RuntimeError):
    pass


@dataclass(frozen=True)
class Revision:
    namespace: str
    revision_digest: str
    used_by: tuple[str, ...]


def get_revisions(
    sources: Iterable[str],
    targets: Iterable[str],
    workflow: Workflow,
    lock: WorkflowLock,
) -> list[Revision]:
    """Resolve names to unique registry revisions; shared digests are tagged once."""
    source_names = list(sources)
    target_names = list(targets)
    if not source_names and not target_names:
        raise ConfigError("please specify at least one source or target (codeSamples) to tag")

    revisions: dict[tuple[str, str], Revision] = {}

    def add(owner: str, namespace: str, digest: str) -> None:
        if not namespace or not digest:
            log_event(LOGGER, "revision_missing", owner=owner)
            return
        key = (namespace, digest)
        current = revisions.get(key)
        used_by = (*current.used_by, owner) if current else (owner,)
        revisions[key] = Revision(namespace=namespace, revision_digest=digest, used_by=used_by)

    options = ", ".join(sorted(workflow.sources))
    for name in source_names:
        if name not in workflow.sources:
            raise ConfigError(f"source {name} not found in workflow.yaml. Options: {options}")
        locked = lock.sources.get(name)
        if locked is None:
            raise ConfigError(
                f"source {name} not found in workflow.lock. If it was recently added, execute "
                f"`speakeasy run` before adding tags. Options: {options}"
            )
        add(name, locked.namespace, locked.revision_digest)

    options = ", ".join(sorted(workflow.targets))
    for name in target_names:
        if name not in workflow.targets:
            raise ConfigError(f"target {name} not found in workflow.yaml. Options: {options}")
        locked_target = lock.targets.get(name)
        if locked_target is None:
            raise ConfigError(
                f"target {name} not found in workflow.lock. If it was recently added, execute "
                f"`speakeasy run` before adding tags. Options: {options}"
            )
        add(name, locked_target.code_samples_namespace, locked_target.code_samples_revision_digest)

    return list(revisions.values())


def branch_tags(branch: str, *, published: bool) -> list[str]:
    tags = [sanitize_branch_name(branch)]
    if published:
        tags.append(PUBLISHED_TAG)
    return tags


def tagging_scope(
    workflow: Workflow,
    ctx: RunContext,
    latest_release: Mapping[str, LanguageReleaseInfo],
) -> tuple[list[str], list[str], bool]:
    """Sources and code-sample targets behind this release, and whether any of them publishes."""
    sources: list[str] = []
    targets: list[str] = []
    published = False

    def include(name: str) -> None:
        nonlocal published
        target = workflow.targets[name]
        published = published or target.publishing
        source = workflow.sources.get(target.source)
        if source is not None and source.registry_location and target.source not in sources:
            sources.append(target.source)
        if target.code_samples_registry:
            targets.append(name)

    if ctx.target:
        if ctx.target in workflow.targets:
            include(ctx.target)
        return sources, targets, published

    for name in sorted(workflow.targets):
        info = latest_release.get(workflow.targets[name].target)
        if info is None:
            continue
        release_path = os.path.normpath(info.path or ".")
        output = workflow.targets[name].output
        if not output:
            matched = release_path == "."
        else:
            matched = os.path.normpath(ctx.resolve_path(output)) == release_path
        if matched:
            include(name)
    return sources, targets, published


class RegistryClient:
    """Speakeasy platform API client for registry tags and check re-triggers.

    Use as a context manager.
    """

    def __init__(
        self,
        api_key: str,
        platform: PlatformConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        settings = platform or PlatformConfig()
        self._api_key = api_key
        self._base_url = settings.api_url
        self._timeout = settings.timeout_seconds
        self._transport = transport
        self._client: httpx.Client | None = None

    def __enter__(self) -> RegistryClient:
        if not self._api_key:
            raise ConfigError("SPEAKEASY_API_KEY is required to talk to the registry")
        self._client = httpx.Client(
            base_url=self._base_url,
            timeout=self._timeout,
            follow_redirects=True,
            headers={"x-api-key": self._api_key, "Accept": "application/json"},
            transport=self._transport,
        )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _post(self, path: str, payload: dict[str, object]) -> httpx.Response:
        if self._client is None:
            raise RuntimeError("RegistryClient must be used as a context manager")
        try:
            response = self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise RegistryError(f"error making the API request: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise RegistryError(f"API request failed with status code: {response.status_code}")
        return response

    def add_tags(self, namespace: str, revision_digest: str, tags: list[str]) -> None:
        self._post(
            f"/v1/artifacts/namespaces/{namespace}/tags",
            {"revision_digest": revision_digest, "tags": tags},
        )

    def trigger_empty_commit(self, *, org: str, repo: str, branch: str) -> None:
        self._post("/v1/github/empty_commit", {"branch": branch, "org": org, "repo_name": repo})
        log_event(LOGGER, "empty_commit_triggered", branch=branch)


def promote(
    client: RegistryClient,
    tags: list[str],
    sources: Iterable[str],
    targets: Iterable[str],
    *,
    workflow: Workflow,
    lock: WorkflowLock,
) -> list[Revision]:
    revisions = get_revisions(sources, targets, workflow, lock)
    for revision in revisions:
        client.add_tags(revision.namespace, revision.revision_digest, tags)
        log_event(
            LOGGER,
            "registry_tags_applied",
            namespace=revision.namespace,
            revision_digest=revision.revision_digest,
            used_by=",".join(revision.used_by),
            tags=",".join(tags),
        )
    return revisions
