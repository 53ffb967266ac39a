from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import time
from typing import Callable, TypeVar, cast
from urllib.parse import urlencode

from reviewloop.models import (
    ChangeRequestSnapshot,
    ChangeRequestStatus,
    Comment,
    CommitMarker,
    MergeStrategy,
)
from reviewloop.observability import log_event
from reviewloop.shell import CommandError, run


LOGGER = logging.getLogger("reviewloop.github_gateway")
_PAGE_SIZE = 100
_T = TypeVar("_T")


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub read failure; the gateway retries it with backoff."""


class GitHubRetryExhaustedError(RuntimeError):
    """A GitHub call kept failing after every allowed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: Exception) -> None:
        super().__init__(
            f"GitHub {operation} failed after {attempts} attempt(s): "
            f"{type(last_error).__name__}: {_first_line(str(last_error))}"
        )
        self.operation = operation
        self.attempts = attempts


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    retry_attempts: int = 3
    retry_backoff_seconds: float = 2.0
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    def __post_init__(self) -> None:
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds must be >= 0")

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_state(self, pr_number: int) -> ChangeRequestSnapshot:
        status = self._with_retry("get_status", lambda: self.get_status(pr_number))
        comments = self._with_retry("list_comments", lambda: self.list_comments(pr_number))
        commits = self._with_retry("list_commits", lambda: self.list_commits(pr_number))
        return ChangeRequestSnapshot(
            number=pr_number,
            status=status,
            comments=tuple(comments),
            commits=tuple(commits),
        )

    def get_status(self, pr_number: int) -> ChangeRequestStatus:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload_obj = _as_object_dict(self._api_get_json(path))
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")
        status = _change_request_status(
            state=_as_string(payload_obj.get("state")),
            merged=_as_bool(payload_obj.get("merged")),
        )
        log_event(
            LOGGER, "github_read", endpoint="pull_request", pr_number=pr_number, status=status
        )
        return status

    def list_comments(self, pr_number: int) -> list[Comment]:
        comments: list[Comment] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/issues/{pr_number}/comments?{query}"
            payload = self._api_get_json(path)
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of issue comments")

            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                user_obj = _as_object_dict(item_obj.get("user"))
                comments.append(
                    Comment(
                        comment_id=_as_int(item_obj.get("id"), field="id"),
                        author_login=_as_login(user_obj.get("login") if user_obj else None),
                        body=_as_string(item_obj.get("body")),
                        created_at=_as_string(item_obj.get("created_at")),
                    )
                )
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        comments.sort(key=lambda comment: comment.comment_id)
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            pr_number=pr_number,
            count=len(comments),
        )
        return comments

    def list_commits(self, pr_number: int) -> list[CommitMarker]:
        commits: list[CommitMarker] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/commits?{query}"
            payload = self._api_get_json(path)
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of commits")

            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                sha = _as_string(item_obj.get("sha")).strip()
                if sha:
                    commits.append(CommitMarker(sha=sha))
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_commits",
            pr_number=pr_number,
            count=len(commits),
        )
        return commits

    def post_comment(self, pr_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{pr_number}/comments"
        # Retried only when gh itself fails; the response body is not read.
        self._with_retry(
            "post_comment",
            lambda: self._api_write("POST", path, payload={"body": body}),
            retry_on=(CommandError,),
        )
        log_event(LOGGER, "github_comment_posted", pr_number=pr_number)

    def trigger_auto_merge(self, pr_number: int, strategy: MergeStrategy) -> None:
        cmd = [
            "gh",
            "pr",
            "merge",
            str(pr_number),
            "--repo",
            self.full_name,
            "--auto",
            f"--{strategy}",
        ]
        self._with_retry("trigger_auto_merge", lambda: run(cmd), retry_on=(CommandError,))
        log_event(LOGGER, "github_auto_merge_enabled", pr_number=pr_number, strategy=strategy)

    def _with_retry(
        self,
        operation: str,
        call: Callable[[], _T],
        *,
        retry_on: tuple[type[Exception], ...] = (RuntimeError, ValueError),
    ) -> _T:
        attempt = 1
        while True:
            try:
                return call()
            except retry_on as exc:
                if attempt >= self.retry_attempts:
                    log_event(
                        LOGGER,
                        "github_call_failed",
                        level=logging.ERROR,
                        repo_full_name=self.full_name,
                        operation=operation,
                        attempts=self.retry_attempts,
                        error_type=type(exc).__name__,
                        error=_first_line(str(exc)),
                    )
                    raise GitHubRetryExhaustedError(operation, self.retry_attempts, exc) from exc
                delay_seconds = self.retry_backoff_seconds * (2 ** (attempt - 1))
                log_event(
                    LOGGER,
                    "github_call_retry",
                    level=logging.WARNING,
                    repo_full_name=self.full_name,
                    operation=operation,
                    attempt=attempt,
                    max_attempts=self.retry_attempts,
                    delay_seconds=delay_seconds,
                    error_type=type(exc).__name__,
                )
                time.sleep(delay_seconds)
                attempt += 1

    def _api_get_json(self, path: str) -> object:
        cmd = ["gh", "api", "--method", "GET"]
        etag = self._etags_by_path.get(path)
        if etag:
            cmd.extend(["--header", f"If-None-Match: {etag}"])
        cmd.extend(["--include", path])

        raw = run(cmd, check=False)
        try:
            status_code, headers, body = _parse_http_response(raw)

            if status_code == 304:
                cached_payload = self._cached_get_payload_by_path.get(path)
                if cached_payload is None:
                    raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                return cached_payload

            if status_code < 200 or status_code >= 300:
                message = body.strip() or "<empty>"
                raise RuntimeError(
                    f"GitHub API request failed with status {status_code}: {message}"
                )

            payload_obj = json.loads(body)
            etag = headers.get("etag")
            if etag:
                self._etags_by_path[path] = etag
                self._cached_get_payload_by_path[path] = payload_obj
            return payload_obj
        except Exception as exc:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubPollingError(f"GitHub polling GET failed for path {path}: {exc}") from exc

    def _api_write(self, method: str, path: str, payload: dict[str, object]) -> None:
        cmd = ["gh", "api", "--method", method.upper(), path, "--input", "-"]
        run(cmd, input_text=json.dumps(payload))


def _change_request_status(*, state: str, merged: bool) -> ChangeRequestStatus:
    if merged:
        return "merged"
    normalized = state.strip().lower()
    if normalized == "closed":
        return "closed"
    if normalized == "open":
        return "open"
    raise RuntimeError(f"Unexpected GitHub pull request state: {state!r}")


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


def _first_line(text: str) -> str:
    stripped = text.strip()
    if not stripped:
        return "<empty>"
    return stripped.splitlines()[0]


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


def _as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


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


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raise RuntimeError("Unexpected GitHub response type for bool field")
