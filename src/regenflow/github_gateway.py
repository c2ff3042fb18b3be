from __future__ import annotations

import base64
from dataclasses import dataclass
import json
import logging
from typing import cast
from urllib.parse import quote, urlencode

from regenflow.models import GitRef, IssueComment, Label, PullRequest, Release, ReviewComment
from regenflow.observability import log_event
from regenflow.shell import CommandError, run


LOGGER = logging.getLogger("regenflow.github_gateway")

PR_PERMISSION_MESSAGE = "GitHub Actions is not permitted to create or approve pull requests"
PR_PERMISSION_HINT = (
    "\nNavigate to Settings > Actions > Workflow permissions and ensure that allow GitHub "
    "Actions to create and approve pull requests is checked. For more information see "
    "https://www.speakeasy.com/docs/advanced-setup/github-setup"
)
_PAGE_SIZE = 100


class GitHubApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class TreeEntry:
    path: str
    content: bytes | None

    def to_payload(self, blob_sha: str | None) -> dict[str, object]:
        return {"path": self.path, "mode": "100644", "type": "blob", "sha": blob_sha}


@dataclass(frozen=True)
class GitHubGateway:
    """Repository-scoped GitHub REST access through ``gh api``."""

    owner: str
    name: str
    token: str = ""

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def with_token(self, token: str) -> GitHubGateway:
        return GitHubGateway(owner=self.owner, name=self.name, token=token)

    # Pull requests

    def list_open_pull_requests(self) -> list[PullRequest]:
        pulls: list[PullRequest] = []
        page = 1
        while True:
            query = urlencode({"state": "open", "per_page": _PAGE_SIZE, "page": page})
            payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls?{query}")
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of pull requests")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    pulls.append(_pull_request_from_payload(item_obj))
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(LOGGER, "github_read", endpoint="open_pull_requests", count=len(pulls))
        return pulls

    def find_pull_request_by_head(self, head: str) -> PullRequest | None:
        query = urlencode({"state": "open", "head": f"{self.owner}:{head}", "per_page": "100"})
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls?{query}")
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list for pull request lookup")
        candidates = [
            _pull_request_from_payload(item_obj)
            for item_obj in (_as_object_dict(item) for item in payload)
            if item_obj is not None
        ]
        if not candidates:
            log_event(LOGGER, "github_read", endpoint="pull_request_lookup_by_head", head=head, found=False)
            return None
        selected = max(candidates, key=lambda pr: pr.number)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=head,
            found=True,
            pr_number=selected.number,
        )
        return selected

    def get_pull_request(self, pr_number: int) -> PullRequest:
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls/{pr_number}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")
        return _pull_request_from_payload(payload_obj)

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        path = f"/repos/{self.owner}/{self.name}/pulls"
        try:
            payload = self._api_json(
                "POST",
                path,
                payload={
                    "title": title,
                    "head": head,
                    "base": base,
                    "body": body,
                    "maintainer_can_modify": True,
                },
            )
            payload_obj = _as_object_dict(payload)
            if payload_obj is None:
                raise RuntimeError("Unexpected GitHub response: expected object for PR")
            pr = _pull_request_from_payload(payload_obj)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.repo_full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            if PR_PERMISSION_MESSAGE in str(exc):
                raise GitHubApiError(f"failed to create PR: {exc}{PR_PERMISSION_HINT}") from exc
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.repo_full_name,
            pr_number=pr.number,
            pr_url=pr.html_url,
            base=base,
            head=head,
        )
        return pr

    def update_pull_request(self, pr_number: int, *, title: str, body: str) -> PullRequest:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload = self._api_json("PATCH", path, payload={"title": title, "body": body})
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for PR")
        pr = _pull_request_from_payload(payload_obj)
        log_event(LOGGER, "github_pr_updated", pr_number=pr.number, pr_url=pr.html_url)
        return pr

    def list_pull_request_files(self, pr_number: int) -> tuple[str, ...]:
        files: list[str] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            payload = self._api_json(
                "GET", f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/files?{query}"
            )
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of pull request files")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                filename = item_obj.get("filename")
                if isinstance(filename, str) and filename:
                    files.append(filename)
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(LOGGER, "github_read", endpoint="pull_request_files", pr_number=pr_number, count=len(files))
        return tuple(files)

    # Labels

    def list_labels(self) -> list[Label]:
        labels: list[Label] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/labels?{query}")
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of labels")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                labels.append(
                    Label(
                        name=_as_string(item_obj.get("name")),
                        description=_as_string(item_obj.get("description")),
                    )
                )
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        return labels

    def create_label(self, name: str, description: str) -> Label:
        self._api_json(
            "POST",
            f"/repos/{self.owner}/{self.name}/labels",
            payload={"name": name, "description": description},
        )
        log_event(LOGGER, "github_label_created", label=name)
        return Label(name=name, description=description)

    def update_label(self, name: str, description: str) -> Label:
        self._api_json(
            "PATCH",
            f"/repos/{self.owner}/{self.name}/labels/{quote(name, safe='')}",
            payload={"description": description},
        )
        log_event(LOGGER, "github_label_updated", label=name)
        return Label(name=name, description=description)

    def add_labels(self, issue_number: int, labels: list[str]) -> None:
        self._api_json(
            "POST",
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels",
            payload={"labels": labels},
        )

    def remove_label(self, issue_number: int, label: str) -> None:
        self._api_json(
            "DELETE",
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels/{quote(label, safe='')}",
        )

    # Git data

    def get_ref(self, branch: str) -> GitRef | None:
        try:
            payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/git/ref/heads/{branch}")
        except GitHubApiError as exc:
            if exc.status_code == 404:
                return None
            raise
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for git ref")
        return _ref_from_payload(payload_obj)

    def create_ref(self, branch: str, sha: str) -> GitRef:
        payload = self._api_json(
            "POST",
            f"/repos/{self.owner}/{self.name}/git/refs",
            payload={"ref": f"refs/heads/{branch}", "sha": sha},
        )
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for git ref")
        return _ref_from_payload(payload_obj)

    def update_ref(self, branch: str, sha: str, *, force: bool = True) -> GitRef:
        payload = self._api_json(
            "PATCH",
            f"/repos/{self.owner}/{self.name}/git/refs/heads/{branch}",
            payload={"sha": sha, "force": force},
        )
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for git ref")
        return _ref_from_payload(payload_obj)

    def create_blob(self, content: bytes) -> str:
        payload = self._api_json(
            "POST",
            f"/repos/{self.owner}/{self.name}/git/blobs",
            payload={"content": base64.b64encode(content).decode("ascii"), "encoding": "base64"},
        )
        return _required_sha(payload, "blob")

    def create_tree(self, base_tree: str, entries: list[TreeEntry]) -> str:
        tree: list[dict[str, object]] = []
        for entry in entries:
            blob_sha = None if entry.content is None else self.create_blob(entry.content)
            tree.append(entry.to_payload(blob_sha))
        payload = self._api_json(
            "POST",
            f"/repos/{self.owner}/{self.name}/git/trees",
            payload={"base_tree": base_tree, "tree": tree},
        )
        return _required_sha(payload, "tree")

    def get_commit_tree(self, commit_sha: str) -> str:
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/git/commits/{commit_sha}")
        payload_obj = _as_object_dict(payload)
        tree = _as_object_dict(payload_obj.get("tree")) if payload_obj else None
        if tree is None:
            raise RuntimeError("Unexpected GitHub response: expected commit with tree")
        return _as_string(tree.get("sha"))

    def create_commit(self, message: str, tree_sha: str, parents: list[str]) -> str:
        payload = self._api_json(
            "POST",
            f"/repos/{self.owner}/{self.name}/git/commits",
            payload={"message": message, "tree": tree_sha, "parents": parents},
        )
        return _required_sha(payload, "commit")

    # Comments

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        comments: list[IssueComment] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            payload = self._api_json(
                "GET", f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments?{query}"
            )
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of issue comments")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                user_obj = _as_object_dict(item_obj.get("user"))
                comments.append(
                    IssueComment(
                        comment_id=_as_int(item_obj.get("id"), field="id"),
                        body=_as_string(item_obj.get("body")),
                        user_login=_as_string(user_obj.get("login") if user_obj else None),
                        html_url=_as_string(item_obj.get("html_url")),
                    )
                )
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(LOGGER, "github_read", endpoint="issue_comments", issue_number=issue_number, count=len(comments))
        return comments

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.repo_full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def delete_issue_comment(self, comment_id: int) -> None:
        self._api_json("DELETE", f"/repos/{self.owner}/{self.name}/issues/comments/{comment_id}")

    def post_review_comment(
        self, pr_number: int, *, body: str, commit_id: str, path: str, line: int
    ) -> ReviewComment:
        payload = self._api_json(
            "POST",
            f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/comments",
            payload={"body": body, "commit_id": commit_id, "path": path, "line": line},
        )
        payload_obj = _as_object_dict(payload) or {}
        log_event(LOGGER, "github_review_comment_posted", pr_number=pr_number, path=path, line=line)
        return ReviewComment(
            comment_id=_as_int(payload_obj.get("id", 0), field="id"),
            body=body,
            path=path,
            line=line,
        )

    # Releases and tags

    def get_release_by_tag(self, tag: str) -> Release | None:
        try:
            payload = self._api_json(
                "GET", f"/repos/{self.owner}/{self.name}/releases/tags/{quote(tag, safe='')}"
            )
        except GitHubApiError as exc:
            if exc.status_code == 404:
                return None
            raise
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for release")
        return _release_from_payload(payload_obj)

    def create_release(
        self, *, tag_name: str, name: str, body: str, target_commitish: str, prerelease: bool
    ) -> Release:
        payload = self._api_json(
            "POST",
            f"/repos/{self.owner}/{self.name}/releases",
            payload={
                "tag_name": tag_name,
                "name": name,
                "body": body,
                "target_commitish": target_commitish,
                "prerelease": prerelease,
            },
        )
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for release")
        release = _release_from_payload(payload_obj)
        log_event(LOGGER, "release_created", tag_name=release.tag_name, url=release.html_url)
        return release

    def _env(self) -> dict[str, str] | None:
        if not self.token:
            return None
        return {"GH_TOKEN": self.token}

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper, "--include", path]
            raw = run(cmd, check=False, env=self._env())
            try:
                status_code, _headers, body = _parse_http_response(raw)
            except Exception as exc:
                log_event(
                    LOGGER,
                    "github_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    raw_preview=_preview_for_log(raw),
                )
                raise
            if status_code < 200 or status_code >= 300:
                message = body.strip() or "<empty>"
                log_event(LOGGER, "github_get_failed", path=path, status_code=status_code)
                raise GitHubApiError(
                    f"GitHub API request failed with status {status_code}: {message}",
                    status_code=status_code,
                )
            return json.loads(body) if body.strip() else None

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        try:
            raw = run(cmd, input_text=stdin_payload, env=self._env())
        except CommandError as exc:
            message = (exc.stdout.strip() + " " + exc.stderr.strip()).strip() or str(exc)
            raise GitHubApiError(
                f"GitHub API {method_upper} {path} failed: {message}",
                status_code=_status_from_text(exc.stderr),
            ) from exc
        return json.loads(raw) if raw.strip() else None


def _pull_request_from_payload(item: dict[str, object]) -> PullRequest:
    head = _as_object_dict(item.get("head")) or {}
    base = _as_object_dict(item.get("base")) or {}
    labels: list[str] = []
    labels_obj = item.get("labels")
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is not None and isinstance(entry_obj.get("name"), str):
                labels.append(cast(str, entry_obj["name"]))
    return PullRequest(
        number=_as_int(item.get("number"), field="number"),
        html_url=_as_string(item.get("html_url")),
        title=_as_string(item.get("title")),
        body=_as_string(item.get("body")),
        head_ref=_as_string(head.get("ref")),
        base_ref=_as_string(base.get("ref")),
        labels=tuple(labels),
        head_sha=_as_string(head.get("sha")),
    )


def _ref_from_payload(item: dict[str, object]) -> GitRef:
    obj = _as_object_dict(item.get("object")) or {}
    return GitRef(ref=_as_string(item.get("ref")), sha=_as_string(obj.get("sha")))


def _release_from_payload(item: dict[str, object]) -> Release:
    return Release(
        release_id=_as_int(item.get("id"), field="id"),
        tag_name=_as_string(item.get("tag_name")),
        html_url=_as_string(item.get("html_url")),
    )


def _required_sha(payload: object, kind: str) -> str:
    payload_obj = _as_object_dict(payload)
    sha = _as_string(payload_obj.get("sha")) if payload_obj else ""
    if not sha:
        raise RuntimeError(f"Unexpected GitHub response: expected sha for {kind}")
    return sha


def _status_from_text(text: str) -> int | None:
    # gh reports failures as "gh: <message> (HTTP 422)"
    marker = "(HTTP "
    index = text.rfind(marker)
    if index < 0:
        return None
    digits = text[index + len(marker) : index + len(marker) + 3]
    return int(digits) if digits.isdigit() else None


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")
