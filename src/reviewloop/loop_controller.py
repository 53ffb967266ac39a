"""Review/revise/merge loop for a single change-request.

The controller alternates between two external agents: it asks the review agent for a
review, reads the reply, and either enables auto-merge or asks the implementation agent
for a revision and waits for a new commit. All cross-iteration state lives in one
``LoopContext`` owned by the controller, so independent loops can run side by side.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import Callable, Literal

from reviewloop.classifier import Approved, classify, describe_verdict
from reviewloop.config import AppConfig
from reviewloop.github_gateway import GitHubGateway, GitHubRetryExhaustedError
from reviewloop.models import ChangeRequestSnapshot, Comment
from reviewloop.observability import log_event
from reviewloop.watcher import EventWatcher, TerminalStateObserved, WaitTimeoutError


LOGGER = logging.getLogger("reviewloop.loop_controller")

OutcomeKind = Literal[
    "merge_requested",
    "already_terminal",
    "review_timeout",
    "revision_timeout",
    "iteration_limit",
    "platform_error",
]
SignalKind = Literal["transition", "verdict", "finished"]

_EXIT_CODES: dict[OutcomeKind, int] = {
    "merge_requested": 0,
    "already_terminal": 0,
    "review_timeout": 3,
    "revision_timeout": 4,
    "iteration_limit": 5,
    "platform_error": 6,
}


class LoopState(Enum):
    REQUEST_REVIEW = "request_review"
    AWAIT_REVIEW = "await_review"
    CLASSIFY = "classify"
    MERGE = "merge"
    REQUEST_REVISION = "request_revision"
    AWAIT_REVISION = "await_revision"


@dataclass(frozen=True)
class LoopOutcome:
    kind: OutcomeKind
    iteration: int
    detail: str

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.kind]


@dataclass(frozen=True)
class LoopSignal:
    kind: SignalKind
    iteration: int
    state: str
    detail: str | None = None


@dataclass
class LoopContext:
    last_processed_comment_id: int | None
    last_seen_commit_sha: str | None
    iteration_count: int = 0
    phase_started_at: float | None = None
    pending_review: Comment | None = None

    @property
    def iteration(self) -> int:
        return self.iteration_count + 1

    def mark_comment_seen(self, comment_id: int | None) -> None:
        if comment_id is None:
            return
        if self.last_processed_comment_id is None or comment_id > self.last_processed_comment_id:
            self.last_processed_comment_id = comment_id

    def mark_commit_seen(self, sha: str) -> None:
        self.last_seen_commit_sha = sha


class ReviewLoopController:
    def __init__(
        self,
        config: AppConfig,
        *,
        github: GitHubGateway,
        pr_number: int,
        watcher: EventWatcher | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        signal_sink: Callable[[LoopSignal], None] | None = None,
    ) -> None:
        self._config = config
        self._github = github
        self._pr_number = pr_number
        self._monotonic = monotonic
        self._sleep = sleep
        self._signal_sink = signal_sink
        self._watcher = watcher or EventWatcher(
            github,
            pr_number=pr_number,
            poll_interval_seconds=config.loop.poll_interval_seconds,
            deadline_seconds=config.loop.deadline_seconds,
            monotonic=monotonic,
            sleep=sleep,
        )
        self._handlers: dict[LoopState, Callable[[LoopContext], LoopState | LoopOutcome]] = {
            LoopState.REQUEST_REVIEW: self._request_review,
            LoopState.AWAIT_REVIEW: self._await_review,
            LoopState.CLASSIFY: self._classify,
            LoopState.MERGE: self._merge,
            LoopState.REQUEST_REVISION: self._request_revision,
            LoopState.AWAIT_REVISION: self._await_revision,
        }

    def run(self) -> LoopOutcome:
        run_started_at = self._monotonic()
        log_event(
            LOGGER,
            "loop_started",
            repo_full_name=self._github.full_name,
            pr_number=self._pr_number,
            review_agent=self._config.agents.review_agent,
            implementation_agent=self._config.agents.implementation_agent,
            poll_interval_seconds=self._config.loop.poll_interval_seconds,
            deadline_seconds=self._config.loop.deadline_seconds,
            max_iterations=self._config.loop.max_iterations,
        )

        context = LoopContext(last_processed_comment_id=None, last_seen_commit_sha=None)
        context.phase_started_at = run_started_at
        try:
            current = self._initialize(context)
        except GitHubRetryExhaustedError as exc:
            current = self._fail(
                "platform_error", phase="initialize", context=context, error=exc
            )

        while not isinstance(current, LoopOutcome):
            state = current
            context.phase_started_at = self._monotonic()
            try:
                current = self.step(state, context)
            except WaitTimeoutError as exc:
                kind: OutcomeKind = (
                    "review_timeout" if exc.phase == "await_review" else "revision_timeout"
                )
                current = self._fail(kind, phase=state.value, context=context, error=exc)
            except GitHubRetryExhaustedError as exc:
                current = self._fail(
                    "platform_error", phase=state.value, context=context, error=exc
                )

            if isinstance(current, LoopState):
                log_event(
                    LOGGER,
                    "transition",
                    iteration=context.iteration,
                    from_state=state.value,
                    to_state=current.value,
                )
                self._emit("transition", context, current.value)

        log_event(
            LOGGER,
            "loop_finished",
            pr_number=self._pr_number,
            outcome=current.kind,
            exit_code=current.exit_code,
            iteration=current.iteration,
            elapsed_seconds=round(self._monotonic() - run_started_at, 1),
            detail=current.detail,
        )
        self._emit("finished", context, current.kind, detail=current.detail)
        return current

    def step(self, state: LoopState, context: LoopContext) -> LoopState | LoopOutcome:
        return self._handlers[state](context)

    def _initialize(self, context: LoopContext) -> LoopState | LoopOutcome:
        snapshot = self._github.get_state(self._pr_number)
        context.mark_comment_seen(snapshot.latest_comment_id)
        context.last_seen_commit_sha = snapshot.latest_commit_sha
        log_event(
            LOGGER,
            "loop_baseline",
            pr_number=self._pr_number,
            status=snapshot.status,
            last_comment_id=context.last_processed_comment_id,
            last_commit_sha=context.last_seen_commit_sha,
        )
        if snapshot.is_terminal:
            return self._already_terminal(snapshot, context)
        return LoopState.REQUEST_REVIEW

    def _request_review(self, context: LoopContext) -> LoopState | LoopOutcome:
        snapshot = self._github.get_state(self._pr_number)
        if snapshot.is_terminal:
            return self._already_terminal(snapshot, context)

        log_event(
            LOGGER, "iteration_started", iteration=context.iteration, pr_number=self._pr_number
        )
        # Nothing posted before the review request can be a reply to it.
        context.mark_comment_seen(snapshot.latest_comment_id)
        self._post(
            context,
            kind="review_request",
            message=self._config.agents.effective_review_request_message,
        )
        return LoopState.AWAIT_REVIEW

    def _await_review(self, context: LoopContext) -> LoopState | LoopOutcome:
        result = self._watcher.wait_for_comment_from(
            self._config.agents.review_agent,
            after_comment_id=context.last_processed_comment_id,
        )
        if isinstance(result, TerminalStateObserved):
            return self._terminal_outcome(result.status, context)

        comment = result.comment
        context.mark_comment_seen(comment.comment_id)
        context.pending_review = comment
        log_event(
            LOGGER,
            "review_received",
            iteration=context.iteration,
            author=comment.author_login,
            comment_id=comment.comment_id,
            ignored_comments=len(result.ignored_comment_ids),
            body=comment.body,
        )
        return LoopState.CLASSIFY

    def _classify(self, context: LoopContext) -> LoopState | LoopOutcome:
        comment = context.pending_review
        if comment is None:
            raise RuntimeError("CLASSIFY entered without a pending review comment")
        context.pending_review = None

        verdict = classify(comment.body)
        log_event(
            LOGGER,
            "review_classified",
            iteration=context.iteration,
            comment_id=comment.comment_id,
            verdict=verdict.kind,
            matched_patterns=verdict.matched_issue_patterns,
            approval_phrase=verdict.approval_phrase if isinstance(verdict, Approved) else None,
        )
        self._emit("verdict", context, LoopState.CLASSIFY.value, detail=describe_verdict(verdict))
        if isinstance(verdict, Approved):
            return LoopState.MERGE
        return LoopState.REQUEST_REVISION

    def _merge(self, context: LoopContext) -> LoopState | LoopOutcome:
        snapshot = self._github.get_state(self._pr_number)
        if snapshot.is_terminal:
            return self._already_terminal(snapshot, context)

        strategy = self._config.loop.merge_strategy
        self._github.trigger_auto_merge(self._pr_number, strategy)
        log_event(
            LOGGER,
            "merge_requested",
            iteration=context.iteration,
            pr_number=self._pr_number,
            strategy=strategy,
        )
        return LoopOutcome(
            kind="merge_requested",
            iteration=context.iteration,
            detail=f"auto-merge ({strategy}) enabled; merge completes once required checks pass",
        )

    def _request_revision(self, context: LoopContext) -> LoopState | LoopOutcome:
        snapshot = self._github.get_state(self._pr_number)
        if snapshot.is_terminal:
            return self._already_terminal(snapshot, context)

        max_iterations = self._config.loop.max_iterations
        if max_iterations is not None and context.iteration >= max_iterations:
            log_event(
                LOGGER,
                "iteration_limit_reached",
                level=logging.WARNING,
                iteration=context.iteration,
                max_iterations=max_iterations,
            )
            return self._fail(
                "iteration_limit",
                phase=LoopState.REQUEST_REVISION.value,
                context=context,
                error=RuntimeError(f"review not approved after {max_iterations} iteration(s)"),
            )

        self._post(
            context,
            kind="revision_request",
            message=self._config.agents.effective_revision_request_message,
        )
        return LoopState.AWAIT_REVISION

    def _await_revision(self, context: LoopContext) -> LoopState | LoopOutcome:
        result = self._watcher.wait_for_new_commit(
            last_seen_sha=context.last_seen_commit_sha,
            after_comment_id=context.last_processed_comment_id,
        )
        if isinstance(result, TerminalStateObserved):
            return self._terminal_outcome(result.status, context)

        previous_sha = context.last_seen_commit_sha
        context.mark_commit_seen(result.commit.sha)
        context.mark_comment_seen(result.last_seen_comment_id)
        context.iteration_count += 1
        log_event(
            LOGGER,
            "commit_received",
            revision=context.iteration_count,
            next_iteration=context.iteration,
            previous_sha=previous_sha,
            sha=result.commit.sha,
        )

        settle_seconds = self._config.loop.settle_seconds
        if settle_seconds > 0:
            log_event(LOGGER, "settle_wait", seconds=settle_seconds)
            self._sleep(settle_seconds)
        return LoopState.REQUEST_REVIEW

    def _post(self, context: LoopContext, *, kind: str, message: str) -> None:
        self._github.post_comment(self._pr_number, message)
        log_event(
            LOGGER,
            "comment_posted",
            iteration=context.iteration,
            kind=kind,
            message=message,
        )

    def _already_terminal(
        self, snapshot: ChangeRequestSnapshot, context: LoopContext
    ) -> LoopOutcome:
        return self._terminal_outcome(snapshot.status, context)

    def _terminal_outcome(self, status: str, context: LoopContext) -> LoopOutcome:
        log_event(
            LOGGER,
            "terminal_state_observed",
            iteration=context.iteration,
            pr_number=self._pr_number,
            status=status,
        )
        return LoopOutcome(
            kind="already_terminal",
            iteration=context.iteration,
            detail=f"pull request is already {status}",
        )

    def _fail(
        self,
        kind: OutcomeKind,
        *,
        phase: str,
        context: LoopContext,
        error: Exception,
    ) -> LoopOutcome:
        phase_elapsed = 0.0
        if context.phase_started_at is not None:
            phase_elapsed = self._monotonic() - context.phase_started_at
        log_event(
            LOGGER,
            "loop_failed",
            level=logging.ERROR,
            outcome=kind,
            phase=phase,
            iteration=context.iteration,
            phase_elapsed_seconds=round(phase_elapsed, 1),
            error_type=type(error).__name__,
            error=str(error),
        )
        return LoopOutcome(kind=kind, iteration=context.iteration, detail=str(error))

    def _emit(
        self,
        kind: SignalKind,
        context: LoopContext,
        state: str,
        *,
        detail: str | None = None,
    ) -> None:
        if self._signal_sink is None:
            return
        self._signal_sink(
            LoopSignal(kind=kind, iteration=context.iteration, state=state, detail=detail)
        )

