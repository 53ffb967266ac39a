from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable, Literal, TypeVar

from reviewloop.github_gateway import GitHubGateway
from reviewloop.models import ChangeRequestSnapshot, ChangeRequestStatus, Comment, CommitMarker
from reviewloop.observability import log_event


LOGGER = logging.getLogger("reviewloop.watcher")
WaitPhase = Literal["await_review", "await_revision"]
_E = TypeVar("_E")
_BOT_SUFFIX = "[bot]"


class WaitTimeoutError(RuntimeError):
    """No qualifying event arrived before the phase deadline."""

    def __init__(
        self, *, phase: WaitPhase, elapsed_seconds: float, deadline_seconds: float
    ) -> None:
        super().__init__(
            f"Timed out in {phase} after {elapsed_seconds:.1f}s (deadline {deadline_seconds}s)"
        )
        self.phase = phase
        self.elapsed_seconds = elapsed_seconds
        self.deadline_seconds = deadline_seconds


@dataclass(frozen=True)
class TerminalStateObserved:
    status: ChangeRequestStatus
    elapsed_seconds: float


@dataclass(frozen=True)
class CommentEvent:
    comment: Comment
    ignored_comment_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class CommitEvent:
    commit: CommitMarker
    last_seen_comment_id: int | None = None


class EventWatcher:
    def __init__(
        self,
        github: GitHubGateway,
        *,
        pr_number: int,
        poll_interval_seconds: float,
        deadline_seconds: float,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if deadline_seconds < 0:
            raise ValueError("deadline_seconds must be >= 0")
        self._github = github
        self._pr_number = pr_number
        self._poll_interval_seconds = poll_interval_seconds
        self._deadline_seconds = deadline_seconds
        self._monotonic = monotonic
        self._sleep = sleep

    def await_event(
        self,
        predicate: Callable[[ChangeRequestSnapshot], _E | None],
        *,
        phase: WaitPhase,
    ) -> _E | TerminalStateObserved:
        """Poll until ``predicate`` yields an event, the request turns terminal, or time runs out.

        The last poll happens no earlier than the deadline, so a timeout is only ever
        raised once ``deadline_seconds`` have fully elapsed, whatever the poll interval.
        """
        started_at = self._monotonic()
        polls = 0
        while True:
            snapshot = self._github.get_state(self._pr_number)
            polls += 1
            elapsed = self._monotonic() - started_at

            if snapshot.is_terminal:
                log_event(
                    LOGGER,
                    "terminal_state_observed",
                    phase=phase,
                    pr_number=self._pr_number,
                    status=snapshot.status,
                    elapsed_seconds=round(elapsed, 1),
                )
                return TerminalStateObserved(status=snapshot.status, elapsed_seconds=elapsed)

            event = predicate(snapshot)
            if event is not None:
                log_event(
                    LOGGER,
                    "wait_satisfied",
                    phase=phase,
                    pr_number=self._pr_number,
                    polls=polls,
                    elapsed_seconds=round(elapsed, 1),
                )
                return event

            remaining = self._deadline_seconds - elapsed
            if remaining <= 0:
                log_event(
                    LOGGER,
                    "wait_timed_out",
                    level=logging.WARNING,
                    phase=phase,
                    pr_number=self._pr_number,
                    polls=polls,
                    elapsed_seconds=round(elapsed, 1),
                    deadline_seconds=self._deadline_seconds,
                )
                raise WaitTimeoutError(
                    phase=phase,
                    elapsed_seconds=elapsed,
                    deadline_seconds=self._deadline_seconds,
                )

            log_event(
                LOGGER,
                "wait_poll",
                phase=phase,
                pr_number=self._pr_number,
                polls=polls,
                elapsed_seconds=round(elapsed, 1),
                remaining_seconds=round(remaining, 1),
            )
            self._sleep(min(self._poll_interval_seconds, remaining))

    def wait_for_comment_from(
        self, author_login: str, *, after_comment_id: int | None
    ) -> CommentEvent | TerminalStateObserved:
        seen_comment_id = after_comment_id
        ignored: list[int] = []

        def find_comment(snapshot: ChangeRequestSnapshot) -> CommentEvent | None:
            nonlocal seen_comment_id
            for comment in snapshot.comments_after(seen_comment_id):
                if logins_match(comment.author_login, author_login):
                    return CommentEvent(comment=comment, ignored_comment_ids=tuple(ignored))
                log_event(
                    LOGGER,
                    "comment_ignored",
                    pr_number=self._pr_number,
                    comment_id=comment.comment_id,
                    author=comment.author_login,
                    waiting_for=author_login,
                )
                ignored.append(comment.comment_id)
                seen_comment_id = comment.comment_id
            return None

        return self.await_event(find_comment, phase="await_review")

    def wait_for_new_commit(
        self, *, last_seen_sha: str | None, after_comment_id: int | None
    ) -> CommitEvent | TerminalStateObserved:
        seen_comment_id = after_comment_id

        def find_commit(snapshot: ChangeRequestSnapshot) -> CommitEvent | None:
            nonlocal seen_comment_id
            # Comments seen now predate the next review request and can never answer it.
            for comment in snapshot.comments_after(seen_comment_id):
                log_event(
                    LOGGER,
                    "comment_ignored",
                    pr_number=self._pr_number,
                    comment_id=comment.comment_id,
                    author=comment.author_login,
                    waiting_for="new_commit",
                )
                seen_comment_id = comment.comment_id
            latest_sha = snapshot.latest_commit_sha
            if latest_sha is None or latest_sha == last_seen_sha:
                return None
            return CommitEvent(
                commit=CommitMarker(sha=latest_sha),
                last_seen_comment_id=seen_comment_id,
            )

        return self.await_event(find_commit, phase="await_revision")


def normalize_login(login: str) -> str:
    normalized = login.strip().lower()
    if normalized.endswith(_BOT_SUFFIX):
        normalized = normalized[: -len(_BOT_SUFFIX)]
    return normalized


def logins_match(actual: str, expected: str) -> bool:
    normalized = normalize_login(actual)
    return bool(normalized) and normalized == normalize_login(expected)
