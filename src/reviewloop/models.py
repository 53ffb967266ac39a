from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


ChangeRequestStatus = Literal["open", "merged", "closed"]
MergeStrategy = Literal["squash", "merge", "rebase"]

TERMINAL_STATUSES: frozenset[ChangeRequestStatus] = frozenset({"merged", "closed"})


@dataclass(frozen=True)
class ChangeRequestRef:
    owner: str
    name: str
    number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def label(self) -> str:
        return f"{self.full_name}#{self.number}"


@dataclass(frozen=True)
class Comment:
    comment_id: int
    author_login: str
    body: str
    created_at: str = ""


@dataclass(frozen=True)
class CommitMarker:
    sha: str


@dataclass(frozen=True)
class ChangeRequestSnapshot:
    number: int
    status: ChangeRequestStatus
    comments: tuple[Comment, ...]
    commits: tuple[CommitMarker, ...]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def latest_comment_id(self) -> int | None:
        if not self.comments:
            return None
        return max(comment.comment_id for comment in self.comments)

    @property
    def latest_commit_sha(self) -> str | None:
        if not self.commits:
            return None
        return self.commits[-1].sha

    def comments_after(self, comment_id: int | None) -> tuple[Comment, ...]:
        """Comments newer than ``comment_id``, ascending by id."""
        ordered = sorted(self.comments, key=lambda comment: comment.comment_id)
        if comment_id is None:
            return tuple(ordered)
        return tuple(comment for comment in ordered if comment.comment_id > comment_id)
