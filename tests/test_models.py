from __future__ import annotations

import pytest

from reviewloop.models import ChangeRequestRef, ChangeRequestSnapshot, Comment, CommitMarker


def _snapshot(
    *,
    status: str = "open",
    comment_ids: tuple[int, ...] = (),
    shas: tuple[str, ...] = (),
) -> ChangeRequestSnapshot:
    return ChangeRequestSnapshot(
        number=7,
        status=status,  # type: ignore[arg-type]
        comments=tuple(
            Comment(comment_id=cid, author_login="codex", body="") for cid in comment_ids
        ),
        commits=tuple(CommitMarker(sha=sha) for sha in shas),
    )


def test_change_request_ref_full_name() -> None:
    ref = ChangeRequestRef(owner="o", name="r", number=3)
    assert ref.full_name == "o/r"
    assert ref.label == "o/r#3"


@pytest.mark.parametrize(
    ("status", "terminal"), [("open", False), ("merged", True), ("closed", True)]
)
def test_snapshot_is_terminal(status: str, terminal: bool) -> None:
    assert _snapshot(status=status).is_terminal is terminal


def test_snapshot_latest_markers() -> None:
    empty = _snapshot()
    assert empty.latest_comment_id is None
    assert empty.latest_commit_sha is None

    snapshot = _snapshot(comment_ids=(5, 12, 9), shas=("a1", "b2"))
    assert snapshot.latest_comment_id == 12
    assert snapshot.latest_commit_sha == "b2"


def test_comments_after_is_ordered_and_exclusive() -> None:
    snapshot = _snapshot(comment_ids=(5, 12, 9))
    assert [c.comment_id for c in snapshot.comments_after(None)] == [5, 9, 12]
    assert [c.comment_id for c in snapshot.comments_after(5)] == [9, 12]
    assert snapshot.comments_after(12) == ()
