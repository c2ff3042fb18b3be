"""Action handlers.

Every ``ActionKind`` has exactly one handler. Handlers receive an ``ActionDeps``
bundle so tests can swap any collaborator for a fake.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import partial
import logging
import os

from regenflow.branches import BranchLifecycleManager, should_delete_branch
from regenflow.commit_push import CommitMessageInput, CommitPushEngine, build_commit_message
from regenflow.config import ConfigError, EngineConfig
from regenflow.fanout import FanoutFinalizer
from regenflow.generation import ExternalGenerator, GenerationRequest, GenerationResult
from regenflow.git_ops import GitRepo
from regenflow.github_gateway import GitHubGateway
from regenflow.models import ActionKind, Branch, PullRequest
from regenflow.observability import log_event
from regenflow.outputs import (
    OutputWriter,
    target_directory,
    target_mcp_release,
    target_publish,
    target_regenerated,
)
from regenflow.pr_reconciler import PRReconciler
from regenflow.prdescription import DescriptionInput, generator_changelog
from regenflow.releases import (
    ReleasesInfo,
    ReleasesParseError,
    read_last_release,
    update_releases_file,
)
from regenflow.reports import REPORTS_DIR, write_report
from regenflow.run_context import RunContext
from regenflow.shell import CommandError
from regenflow.suggestions import write_suggestions
from regenflow.tagbridge import RegistryClient, branch_tags, promote, tagging_scope
from regenflow.versionbumps import NO_BUMP, manual_bump_was_used, resolve_label_bump
from regenflow.workflow import Workflow, load_lock, load_workflow


LOGGER = logging.getLogger("regenflow.actions")

TEST_REPORT_MARKER = "SDK Tests Report"
_TEST_REPORT_HEADER = (
    f"## **{TEST_REPORT_MARKER}**\n\n"
    "| Target | Status | Report |\n"
    "|--------|--------|--------|\n"
)


class ActionError(RuntimeError):
    pass


@dataclass
class ActionDeps:
    ctx: RunContext
    config: EngineConfig
    repo: GitRepo
    gateway: GitHubGateway
    reconciler: PRReconciler
    branches: BranchLifecycleManager
    pusher: CommitPushEngine
    generator: ExternalGenerator
    outputs: OutputWriter
    registry: Callable[[], RegistryClient]

    @classmethod
    def build(cls, ctx: RunContext, config: EngineConfig) -> ActionDeps:
        repo = GitRepo(ctx.repo_root, config.automation)
        gateway = GitHubGateway(ctx.owner, ctx.repo_name, ctx.github_token)
        pr_gateway = gateway.with_token(ctx.pr_creation_token) if ctx.pr_creation_token else None
        reconciler = PRReconciler(gateway, ctx, config.branches, pr_gateway)
        return cls(
            ctx=ctx,
            config=config,
            repo=repo,
            gateway=gateway,
            reconciler=reconciler,
            branches=BranchLifecycleManager(
                repo, ctx, config.branches, config.automation, reconciler
            ),
            pusher=CommitPushEngine(
                repo, gateway, attempts=config.push.attempts, test_mode=ctx.is_test_mode
            ),
            generator=ExternalGenerator(config.commands, ctx.work_dir),
            outputs=OutputWriter(ctx.output_path, test_mode=ctx.is_test_mode),
            registry=partial(RegistryClient, ctx.api_key, config.platform),
        )


def run_action(deps: ActionDeps) -> None:
    action = deps.ctx.action
    handler = HANDLERS.get(action)
    if handler is None:
        raise ConfigError(f"unsupported action: {action}")
    log_event(LOGGER, "action_started", action=action, mode=deps.ctx.mode)
    handler(deps)
    log_event(LOGGER, "action_finished", action=action)


# run-workflow


def run_workflow(deps: ActionDeps) -> None:
    ctx = deps.ctx
    workflow = load_workflow(ctx.work_dir)
    outputs: dict[str, str] = {}

    existing: PullRequest | None = None
    requested = ""
    if ctx.mode == "pr":
        requested, existing = deps.reconciler.find_existing_pr(ctx.feature_branch, "run-workflow")

    if ctx.is_test_mode:
        branch = Branch(name=ctx.source_branch, kind="feature")
    else:
        branch = deps.branches.resolve(requested, "run-workflow", recover=False)
        outputs["branch_name"] = branch.name
    if existing is None and branch.kind == "feature" and ctx.mode == "pr":
        existing = deps.gateway.find_pull_request_by_head(branch.name)

    decision = resolve_label_bump(existing.labels, existing.body) if existing else NO_BUMP
    succeeded = False
    try:
        try:
            result = deps.generator.generate(
                GenerationRequest(
                    branch=branch.name,
                    target=ctx.target,
                    bump=decision,
                    force=ctx.force,
                    set_version=ctx.set_version,
                    # PR runs test through the PR checks instead
                    skip_testing=ctx.skip_testing or (ctx.mode == "pr" and bool(workflow.targets)),
                )
            )
        except Exception:
            deps.outputs.write(outputs)
            if branch.kind == "feature" and ctx.mode == "pr":
                deps.pusher.commit_and_push(
                    branch.name,
                    build_commit_message(CommitMessageInput(action="run-workflow")),
                    signed=ctx.signed_commits,
                    base_branch=ctx.pr_base_branch,
                )
            raise

        outputs.update(generation_outputs(result))
        regenerated = result.any_regenerated
        manual_bump = manual_bump_was_used(
            decision, result.version_report.bump_types() if result.version_report else ()
        )
        if branch.kind == "shared" or ctx.mode == "matrix":
            reports_dir = ctx.repo_root / ctx.resolve_path(REPORTS_DIR)
            report = result.target_report(ctx.target or "all", manual_bump=manual_bump)
            write_report(reports_dir, report)

        releases_info: ReleasesInfo | None = None
        if regenerated and not result.sources_only:
            releases_info = result.releases_info(
                title=ctx.invoked_at.strftime("%Y-%m-%d %H:%M:%S"),
                doc_location=result.openapi_doc_location,
            )
            update_releases_file(
                ctx.repo_root,
                releases_directory(ctx, workflow),
                releases_info,
                repository=ctx.repository,
            )

        if regenerated:
            deps.pusher.commit_and_push(
                branch.name,
                build_commit_message(
                    CommitMessageInput(
                        action="run-workflow",
                        openapi_doc_version=result.openapi_doc_version,
                        speakeasy_version=result.speakeasy_version,
                        sources_only=result.sources_only,
                        enable_changelog=ctx.enable_sdk_changelog,
                        version_report=result.version_report,
                    )
                ),
                signed=ctx.signed_commits,
                shared=branch.kind == "shared",
                base_branch=ctx.pr_base_branch,
            )

        if regenerated and not ctx.is_test_mode:
            if ctx.mode == "pr":
                pr = _finalize_pr(deps, branch, result, existing, manual_bump=manual_bump)
                outputs["pr_url"] = pr.html_url
            elif ctx.mode == "direct":
                outputs["commit_hash"] = _merge_into_source(deps, branch)
                if not ctx.should_skip_releasing:
                    if releases_info is not None:
                        create_releases(
                            deps, releases_info, result.release_notes(), outputs["commit_hash"]
                        )
                    _tag_direct_mode(deps, workflow, result)
        succeeded = True
    finally:
        if not ctx.is_test_mode and not ctx.debug and should_delete_branch(
            branch, succeeded=succeeded, direct=ctx.mode == "direct"
        ):
            deps.branches.delete(branch)

    deps.outputs.write(outputs)


def generation_outputs(result: GenerationResult) -> dict[str, str]:
    outputs: dict[str, str] = {}
    for name, target in result.targets.items():
        outputs[target_regenerated(name)] = _bool(target.regenerated)
        outputs[target_directory(name)] = target.directory
        outputs[target_publish(name)] = _bool(target.publish)
        if name.startswith("mcp-"):
            outputs[target_mcp_release(name)] = _bool(target.regenerated and target.publish)
    outputs["resolved_speakeasy_version"] = result.speakeasy_version
    if result.previous_gen_version:
        outputs["previous_gen_version"] = result.previous_gen_version
    return outputs


def releases_directory(ctx: RunContext, workflow: Workflow) -> str:
    """Directory holding RELEASES.md for this run: the target output, else the working directory."""
    if ctx.target and ctx.target in workflow.targets:
        output = workflow.targets[ctx.target].output
        if output:
            return ctx.resolve_path(output.removeprefix("./"))
    return ctx.resolve_path(".")


def _finalize_pr(
    deps: ActionDeps,
    branch: Branch,
    result: GenerationResult,
    existing: PullRequest | None,
    *,
    manual_bump: bool,
) -> PullRequest:
    ctx = deps.ctx
    if existing is None or existing.head_ref != branch.name:
        _head, existing = deps.reconciler.find_existing_pr(branch.name, "run-workflow")
        if existing is None and branch.kind == "feature":
            existing = deps.gateway.find_pull_request_by_head(branch.name)

    if ctx.is_docs_generation:
        pr = deps.reconciler.create_or_update_docs_pr(
            branch.name,
            doc_version=result.openapi_doc_version,
            doc_location=result.openapi_doc_location,
            speakeasy_version=result.speakeasy_version,
            generation_version=result.generation_version,
            pr=existing,
        )
    else:
        description = DescriptionInput(
            workflow_name=ctx.workflow_name,
            source_branch=ctx.source_branch,
            feature_branch=ctx.feature_branch,
            specified_target=ctx.target,
            source_generation=result.sources_only,
            speakeasy_version=result.speakeasy_version,
            manual_bump=manual_bump,
            version_report=result.version_report,
            linting_report_url=result.linting_report_url,
            changes_report_url=result.changes_report_url,
            openapi_change_summary=result.openapi_change_summary,
            changelog=generator_changelog(result.release_notes()),
        )
        pr = deps.reconciler.create_or_update_pr(branch.name, description, existing)

    if result.has_testing_enabled and not ctx.pr_creation_token and ctx.api_key:
        _trigger_checks(deps, branch.name)
    return pr


def _trigger_checks(deps: ActionDeps, branch: str) -> None:
    try:
        with deps.registry() as client:
            client.trigger_empty_commit(org=deps.ctx.owner, repo=deps.ctx.repo_name, branch=branch)
    except Exception as exc:  # noqa: BLE001
        log_event(LOGGER, "empty_commit_trigger_failed", branch=branch, error_type=type(exc).__name__)


def _merge_into_source(deps: ActionDeps, branch: Branch) -> str:
    source = deps.ctx.source_branch
    deps.repo.checkout(source)
    deps.repo.merge(branch.name)
    deps.repo.push(source)
    sha = deps.repo.head_sha()
    log_event(LOGGER, "branch_merged", branch=branch.name, into=source, sha=sha)
    return sha


def _tag_direct_mode(deps: ActionDeps, workflow: Workflow, result: GenerationResult) -> None:
    if not deps.ctx.api_key:
        return
    if deps.ctx.target:
        sources, targets, published = tagging_scope(workflow, deps.ctx, {})
    else:
        sources, targets, published = _full_scope(workflow)
    published = published or any(t.publish for t in result.regenerated_targets.values())
    _apply_branch_tags(deps, workflow, sources, targets, published=published)


def _full_scope(workflow: Workflow) -> tuple[list[str], list[str], bool]:
    sources = sorted(
        name for name, source in workflow.sources.items() if source.registry_location
    )
    targets = sorted(
        name for name, target in workflow.targets.items() if target.code_samples_registry
    )
    published = any(target.publishing for target in workflow.targets.values())
    return sources, targets, published


def _apply_branch_tags(
    deps: ActionDeps,
    workflow: Workflow,
    sources: list[str],
    targets: list[str],
    *,
    published: bool,
) -> None:
    if not sources and not targets:
        log_event(LOGGER, "registry_tagging_skipped", reason="nothing_to_tag")
        return
    tags = branch_tags(deps.ctx.source_branch, published=published)
    try:
        lock = load_lock(deps.ctx.work_dir)
        with deps.registry() as client:
            promote(client, tags, sources, targets, workflow=workflow, lock=lock)
    except Exception as exc:  # noqa: BLE001
        log_event(LOGGER, "registry_tagging_failed", tags=",".join(tags), error_type=type(exc).__name__)


# releases


def release_body(info: ReleasesInfo, notes: str, repository: str) -> str:
    body = "# Generated by Speakeasy CLI" + info.render(repository)
    if notes.strip():
        body = f"{body}\n\n{notes.strip()}"
    return body


def create_releases(
    deps: ActionDeps,
    info: ReleasesInfo,
    release_notes: dict[str, str],
    target_commitish: str,
) -> list[str]:
    """Create one GitHub release per released language, skipping tags that already exist."""
    created: list[str] = []
    for language, language_info in sorted(info.languages.items()):
        tag = language_info.tag_name
        if deps.gateway.get_release_by_tag(tag) is not None:
            log_event(LOGGER, "release_exists", tag_name=tag, language=language)
            continue
        deps.gateway.create_release(
            tag_name=tag,
            name=tag,
            body=release_body(info, release_notes.get(language, ""), deps.ctx.repository),
            target_commitish=target_commitish,
            prerelease=language_info.is_prerelease,
        )
        created.append(tag)
    return created


def release_directory_from_files(files: Iterable[str]) -> str | None:
    """Directory of the RELEASES.md touched by the last commit, if any."""
    for path in files:
        if path.endswith("gen.lock"):
            # .speakeasy/gen.lock lives one level below the SDK root
            return os.path.dirname(os.path.dirname(path)) or "."
        if path.endswith("RELEASES.md"):
            return os.path.dirname(path) or "."
    return None


def release(deps: ActionDeps) -> None:
    ctx = deps.ctx
    if not ctx.github_token:
        raise ConfigError("github access token is required")

    workflow = load_workflow(ctx.work_dir)
    directory = ctx.resolve_path(".")
    explicit = False
    if ctx.target and ctx.target in workflow.targets:
        directory = releases_directory(ctx, workflow)
        explicit = True
    if not explicit:
        try:
            files = deps.repo.committed_files("HEAD~1..HEAD")
        except CommandError:
            log_event(LOGGER, "committed_files_unavailable")
            files = ()
        directory = release_directory_from_files(files) or directory

    try:
        info = read_last_release(ctx.repo_root, directory)
    except ReleasesParseError as exc:
        raise ActionError(f"failed to read releases from {directory}: {exc}") from exc

    outputs: dict[str, str] = {}
    for language, language_info in info.languages.items():
        outputs[target_regenerated(language)] = "true"
        outputs[target_directory(language)] = language_info.path
    outputs.update(publish_outputs(workflow, ctx, directory))

    create_releases(deps, info, {}, deps.repo.head_sha())
    deps.outputs.write(outputs)

    if ctx.api_key:
        sources, targets, published = tagging_scope(workflow, ctx, info.languages)
        _apply_branch_tags(deps, workflow, sources, targets, published=published)


def publish_outputs(workflow: Workflow, ctx: RunContext, directory: str) -> dict[str, str]:
    released = os.path.normpath(directory)
    outputs: dict[str, str] = {}
    for target in workflow.targets.values():
        output = os.path.normpath(ctx.resolve_path(target.output or "."))
        if output == released:
            outputs[target_publish(target.target)] = _bool(target.publishing)
    return outputs


# tag


def tag(deps: ActionDeps) -> None:
    ctx = deps.ctx
    tags = list(ctx.registry_tags)
    if not tags:
        raise ConfigError("no registry tags provided")
    if not ctx.api_key:
        raise ConfigError("speakeasy api key is required to tag registry revisions")

    workflow = load_workflow(ctx.work_dir)
    lock = load_lock(ctx.work_dir)
    sources = list(ctx.sources)
    targets = list(ctx.code_samples)
    if not sources and not targets:
        sources = sorted(workflow.sources)
        targets = sorted(
            name for name, target in workflow.targets.items() if target.code_samples_registry
        )
    with deps.registry() as client:
        promote(client, tags, sources, targets, workflow=workflow, lock=lock)


# suggestions


def suggest(deps: ActionDeps) -> None:
    ctx = deps.ctx
    requested, _pr = deps.reconciler.find_existing_pr("", "suggest")
    branch = deps.branches.resolve(requested, "suggest", recover=False)
    succeeded = False
    try:
        output = deps.generator.suggest(output_path=ctx.openapi_doc_output)
        deps.pusher.commit_and_push(
            branch.name,
            build_commit_message(
                CommitMessageInput(action="suggest", openapi_doc_version=ctx.openapi_doc_output)
            ),
            signed=ctx.signed_commits,
            base_branch=ctx.pr_base_branch,
        )
        deps.outputs.write({"branch_name": branch.name, "cli_output": output})
        succeeded = True
    finally:
        if not succeeded and not ctx.debug and branch.kind == "ephemeral":
            deps.branches.delete(branch)


def finalize(deps: ActionDeps) -> None:
    ctx = deps.ctx
    if not ctx.branch_name:
        raise ConfigError("branch name is required")
    branch = Branch(name=ctx.branch_name, kind="ephemeral")
    succeeded = False
    try:
        deps.branches.checkout(branch.name)
        _head, pr = deps.reconciler.find_existing_pr(branch.name, "finalize")
        if pr is None:
            pr = deps.reconciler.create_suggestion_pr(branch.name, ctx.openapi_doc_output)
        if ctx.cli_output:
            write_suggestions(deps.reconciler, pr.number, ctx.cli_output)
        deps.outputs.write({"branch_name": branch.name, "pr_url": pr.html_url})
        succeeded = True
    finally:
        if not succeeded and not ctx.debug:
            deps.branches.delete(branch)


# branches


def resolve_branch(deps: ActionDeps) -> None:
    name, _pr = deps.reconciler.find_existing_pr(deps.ctx.feature_branch, "run-workflow")
    if name and name != deps.ctx.feature_branch:
        deps.branches.checkout(name)
    else:
        name = deps.branches.resolve(name, "run-workflow", recover=False).name
    deps.outputs.write({"branch_name": name})


def fanout_finalize(deps: ActionDeps) -> None:
    result = FanoutFinalizer(
        deps.repo, deps.ctx, deps.reconciler, sdk_regen_prefix=deps.config.branches.sdk_regen
    ).finalize()
    outputs = {"branch_name": result.target_branch, "commit_hash": result.squash_sha}
    if result.pull_request is not None:
        outputs["pr_url"] = result.pull_request.html_url
    deps.outputs.write(outputs)


# test


def targets_for_changed_files(
    files: Iterable[str], workflow: Workflow, ctx: RunContext
) -> list[str]:
    """Targets whose generator config (``.speakeasy/gen.yaml`` or ``gen.lock``) changed."""
    found: list[str] = []
    for path in files:
        if "gen.yaml" not in path and "gen.lock" not in path:
            continue
        config_dir = os.path.normpath(os.path.dirname(os.path.dirname(path)) or ".")
        for name, target in sorted(workflow.targets.items()):
            output = os.path.normpath(ctx.resolve_path(target.output or "."))
            if output == config_dir and name not in found:
                found.append(name)
    return found


def render_test_report(results: dict[str, bool], report_url: str) -> str:
    rows = []
    for target, passed in results.items():
        status = "✅" if passed else "❌"
        rows.append(f"| {target} | <p align='center'>{status}</p> | [view report]({report_url}) |")
    return _TEST_REPORT_HEADER + "\n".join(rows)


def run_tests(deps: ActionDeps) -> None:
    ctx = deps.ctx
    workflow = load_workflow(ctx.work_dir)
    targets: list[str] = []
    if ctx.target and ctx.event_name == "workflow_dispatch":
        targets = [workflow.target_for(ctx.target).name]

    pr_number = ctx.event_pr_number
    if not targets:
        if pr_number is not None:
            files = deps.gateway.list_pull_request_files(pr_number)
        else:
            files = deps.repo.committed_files("HEAD~1..HEAD")
        targets = targets_for_changed_files(files, workflow, ctx)
    if not targets:
        log_event(LOGGER, "tests_skipped", reason="no_targets")
        return

    results: dict[str, bool] = {}
    failures: list[str] = []
    for target in targets:
        try:
            deps.generator.test(target)
        except CommandError as exc:
            results[target] = False
            failures.append(f"{target}: {exc}")
            continue
        results[target] = True
    log_event(LOGGER, "tests_finished", targets=",".join(targets), failed=len(failures))

    if pr_number is not None and not ctx.is_test_mode:
        try:
            deps.reconciler.replace_issue_comment(
                pr_number, TEST_REPORT_MARKER, render_test_report(results, ctx.run_url)
            )
        except Exception as exc:  # noqa: BLE001
            log_event(LOGGER, "test_report_failed", pr_number=pr_number, error_type=type(exc).__name__)

    if failures:
        raise ActionError("test failures occured: " + "; ".join(failures))


def _bool(value: bool) -> str:
    return "true" if value else "false"


HANDLERS: dict[ActionKind, Callable[[ActionDeps], None]] = {
    "run-workflow": run_workflow,
    "suggest": suggest,
    "finalize": finalize,
    "resolve-branch": resolve_branch,
    "fanout-finalize": fanout_finalize,
    "release": release,
    "tag": tag,
    "test": run_tests,
}
