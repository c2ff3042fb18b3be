from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
import logging
import re

from regenflow.config import BranchPrefixes
from regenflow.github_gateway import GitHubGateway
from regenflow.models import ActionKind, BumpType, Label, PullRequest
from regenflow.observability import log_event
from regenflow.prdescription import (
    DescriptionInput,
    describe,
    docs_body,
    docs_title,
    suggestion_body,
    suggestion_title,
    truncate_body,
)
from regenflow.reports import MergedVersionReport
from regenflow.run_context import RunContext, sanitize_branch_name
from regenflow.versionbumps import BUMP_TYPE_LABELS, is_bump_label


LOGGER = logging.getLogger("regenflow.pr_reconciler")

_EXPLANATION_ANSI_RE = re.compile(r"\x1b[^m]*m")


def sanitize_explanation(text: str) -> str:
    return _EXPLANATION_ANSI_RE.sub("", text).replace("~", "\\~")


def pr_version_metadata(
    report: MergedVersionReport | None, label_types: dict[str, Label]
) -> tuple[str, BumpType | None, list[str]]:
    """Title suffix, bump type and desired labels for a merged version report.

    Only an unambiguous bump type yields a label, and only when that label exists
    in the repository.
    """
    if report is None:
        return "", None, []
    bump_type = report.single_bump_type()
    version = report.single_new_version()
    suffix = f" {version}" if version else ""
    if bump_type is None or bump_type not in label_types:
        return suffix, None, []
    return suffix, bump_type, [bump_type]


def plan_label_changes(
    current: Iterable[str], desired: Iterable[str]
) -> tuple[list[str], list[str]]:
    """Labels to add and to remove; only bump-type labels are ever removed."""
    current_list = list(current)
    desired_set = set(desired)
    to_add = [label for label in sorted(desired_set) if label not in current_list]
    to_remove = [label for label in current_list if is_bump_label(label) and label not in desired_set]
    return to_add, to_remove


@dataclass
class PRReconciler:
    gateway: GitHubGateway
    ctx: RunContext
    prefixes: BranchPrefixes = field(default_factory=BranchPrefixes)
    pr_gateway: GitHubGateway | None = None

    @property
    def _pr_client(self) -> GitHubGateway:
        return self.pr_gateway or self.gateway

    def expected_branch_prefix(self, action: ActionKind) -> str:
        if self.ctx.is_docs_generation:
            prefix = self.prefixes.docs_regen
        elif action in {"suggest", "finalize"}:
            prefix = self.prefixes.suggestion
        else:
            prefix = self.prefixes.sdk_regen
        if self.ctx.on_main_branch:
            return prefix
        return f"{prefix}-{sanitize_branch_name(self.ctx.source_branch)}"

    def find_existing_pr(
        self, branch_name: str, action: ActionKind
    ) -> tuple[str, PullRequest | None]:
        """Open PR owned by this run family, matched on head prefix and base branch.

        Per-target suffixes are excluded from the prefix so that matrix jobs for
        different targets converge on one PR.
        """
        prefix = self.expected_branch_prefix(action)
        expected_base = self.ctx.pr_base_branch
        for pr in self.gateway.list_open_pull_requests():
            head = pr.head_ref
            if head != prefix and not head.startswith(prefix + "-"):
                continue
            if branch_name and head != branch_name:
                continue
            if not self.ctx.on_main_branch and pr.base_ref != expected_base:
                log_event(
                    LOGGER,
                    "pr_base_mismatch",
                    head=head,
                    expected_base=expected_base,
                    actual_base=pr.base_ref,
                )
                continue
            log_event(LOGGER, "pr_found", pr_number=pr.number, head=head)
            return head, pr
        log_event(LOGGER, "pr_not_found", prefix=prefix)
        return branch_name, None

    def upsert_label_types(self) -> dict[str, Label]:
        """Make sure every bump-type label exists with its canonical description.

        A failure leaves the labels seen so far; versioning labels are never worth
        failing a run over.
        """
        actual: dict[str, Label] = {}
        try:
            for label in self.gateway.list_labels():
                actual[label.name] = label
        except Exception as exc:  # noqa: BLE001
            log_event(LOGGER, "label_upsert_failed", error_type=type(exc).__name__)
            return actual

        for name, description in BUMP_TYPE_LABELS.items():
            existing = actual.get(name)
            try:
                if existing is None:
                    actual[name] = self.gateway.create_label(name, description)
                elif existing.description != description:
                    actual[name] = self.gateway.update_label(name, description)
            except Exception as exc:  # noqa: BLE001
                log_event(LOGGER, "label_upsert_failed", label=name, error_type=type(exc).__name__)
                return actual
        return actual

    def reconcile_labels(self, pr_number: int, current: Iterable[str], desired: Iterable[str]) -> None:
        to_add, to_remove = plan_label_changes(current, desired)
        if to_add:
            try:
                self.gateway.add_labels(pr_number, to_add)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "label_add_failed",
                    pr_number=pr_number,
                    labels=",".join(to_add),
                    error_type=type(exc).__name__,
                )
        for label in to_remove:
            try:
                self.gateway.remove_label(pr_number, label)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "label_remove_failed",
                    pr_number=pr_number,
                    label=label,
                    error_type=type(exc).__name__,
                )
        if to_add or to_remove:
            log_event(
                LOGGER,
                "pr_labels_reconciled",
                pr_number=pr_number,
                added=",".join(to_add),
                removed=",".join(to_remove),
            )

    def create_or_update_pr(
        self, branch: str, description: DescriptionInput, pr: PullRequest | None = None
    ) -> PullRequest:
        label_types = self.upsert_label_types()
        _suffix, label_bump_type, labels = pr_version_metadata(
            description.version_report, label_types
        )
        result = describe(replace(description, label_bump_type=label_bump_type))

        if pr is not None:
            updated = self._pr_client.update_pull_request(
                pr.number, title=result.title, body=result.body
            )
            self.reconcile_labels(updated.number, pr.labels, labels)
            return updated

        created = self._pr_client.create_pull_request(
            title=result.title, head=branch, base=self.ctx.pr_base_branch, body=result.body
        )
        if labels:
            self.reconcile_labels(created.number, created.labels, labels)
        return created

    def find_or_create(
        self, branch: str, action: ActionKind, description: DescriptionInput
    ) -> PullRequest:
        _head, existing = self.find_existing_pr(branch, action)
        return self.create_or_update_pr(branch, description, existing)

    def create_or_update_docs_pr(
        self,
        branch: str,
        *,
        doc_version: str,
        doc_location: str,
        speakeasy_version: str,
        generation_version: str,
        pr: PullRequest | None = None,
    ) -> PullRequest:
        body = truncate_body(
            docs_body(
                doc_version=doc_version,
                doc_location=doc_location,
                speakeasy_version=speakeasy_version,
                generation_version=generation_version,
            )
        )
        title = docs_title(self.ctx.workflow_name, self.ctx.source_branch)
        if pr is not None:
            return self.gateway.update_pull_request(pr.number, title=title, body=body)
        return self.gateway.create_pull_request(
            title=title, head=branch, base=self.ctx.pr_base_branch, body=body
        )

    def create_suggestion_pr(self, branch: str, output: str) -> PullRequest:
        return self.gateway.create_pull_request(
            title=suggestion_title(self.ctx.workflow_name, self.ctx.source_branch),
            head=branch,
            base=self.ctx.pr_base_branch,
            body=suggestion_body(output),
        )

    def append_pr_body(self, pr_number: int, text: str) -> PullRequest:
        pr = self.gateway.get_pull_request(pr_number)
        body = truncate_body(f"{pr.body}\n\n{sanitize_explanation(text)}")
        return self.gateway.update_pull_request(pr_number, title=pr.title, body=body)

    def write_review_comment(self, pr_number: int, path: str, body: str, line: int) -> None:
        pr = self.gateway.get_pull_request(pr_number)
        self.gateway.post_review_comment(
            pr_number,
            body=sanitize_explanation(body),
            commit_id=pr.head_sha,
            path=path,
            line=line,
        )

    def replace_issue_comment(self, pr_number: int, marker: str, body: str) -> None:
        """Post ``body`` as the only comment on the PR that contains ``marker``."""
        for comment in self.gateway.list_issue_comments(pr_number):
            if marker not in comment.body:
                continue
            try:
                self.gateway.delete_issue_comment(comment.comment_id)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "comment_delete_failed",
                    comment_id=comment.comment_id,
                    error_type=type(exc).__name__,
                )
        self.gateway.post_issue_comment(pr_number, sanitize_explanation(body))
