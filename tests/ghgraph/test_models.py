"""Tests for states, commits and issue freezing."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ghgraph.exceptions import FrozenIssueError
from ghgraph.models import (
    Commit,
    Issue,
    PullRequest,
    ReferencedLink,
    Signature,
    State,
    User,
    parse_datetime,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _commit(sha: str, days: int | None) -> Commit:
    if days is None:
        return Commit(sha)
    sig = Signature(name="dev", date=T0 + timedelta(days=days))
    return Commit(sha, author=sig, committer=sig, message=sha)


class TestState:
    @pytest.mark.parametrize(
        "value, expected",
        [("open", State.OPEN), ("CLOSED", State.CLOSED), ("weird", State.ANY), (None, State.ANY)],
    )
    def test_from_string(self, value, expected):
        assert State.from_string(value) is expected

    def test_for_pull_request(self):
        assert State.for_pull_request(State.CLOSED, merged=True) is State.MERGED
        assert State.for_pull_request(State.CLOSED, merged=False) is State.DECLINED
        assert State.for_pull_request(State.OPEN, merged=False) is State.OPEN

    @pytest.mark.parametrize(
        "filter_, state, expected",
        [
            (State.ANY, State.DECLINED, True),
            (State.CLOSED, State.MERGED, True),
            (State.CLOSED, State.DECLINED, True),
            (State.CLOSED, State.OPEN, False),
            (State.UNMERGED, State.OPEN, True),
            (State.UNMERGED, State.DECLINED, True),
            (State.UNMERGED, State.MERGED, False),
            (State.MERGED, State.MERGED, True),
            (State.MERGED, State.DECLINED, False),
            (State.OPEN, State.CLOSED, False),
        ],
    )
    def test_matches(self, filter_, state, expected):
        assert filter_.matches(state) is expected


class TestCommit:
    def test_stub(self):
        assert Commit("a" * 40).is_stub
        assert Commit("a" * 40).author_time is None
        assert not _commit("a" * 40, 1).is_stub

    def test_identity_by_hash(self):
        assert _commit("abc", 1) == Commit("abc")
        assert len({_commit("abc", 1), Commit("abc")}) == 1

    def test_fill_keeps_known_parts(self):
        commit = _commit("abc", 1)
        commit.fill(Commit("abc", in_git=True))
        assert commit.message == "abc"
        assert commit.in_git


class TestUser:
    def test_identity_by_login(self):
        assert User("alice", name="A") == User("alice")
        assert User("alice") != User("bob")


class TestParseDatetime:
    def test_zulu(self):
        assert parse_datetime("2024-01-01T00:00:00Z") == T0

    def test_invalid(self):
        assert parse_datetime("yesterday") is None
        assert parse_datetime(None) is None


class TestFreeze:
    def test_mutable_until_frozen(self):
        issue = Issue(1, title="a")
        issue.title = "b"
        issue.freeze()
        assert issue.frozen
        with pytest.raises(FrozenIssueError) as exc_info:
            issue.title = "c"
        assert exc_info.value.number == 1
        assert exc_info.value.attribute == "title"

    def test_freeze_is_idempotent(self):
        issue = Issue(1, related_issues=[ReferencedLink(2, None, T0)])
        issue.freeze()
        issue.freeze()
        assert [link.target for link in issue.related_issues] == [2]

    def test_lists_become_tuples(self):
        issue = Issue(1)
        issue.freeze()
        assert issue.comments == ()
        assert issue.related_commits == ()

    def test_comments_sorted_by_time(self):
        issue = Issue(
            1,
            comments=[
                ReferencedLink("late", None, T0 + timedelta(days=2)),
                ReferencedLink("early", None, T0),
            ],
        )
        issue.freeze()
        assert [c.target for c in issue.comments] == ["early", "late"]

    def test_related_commits_deduplicated_and_sorted(self):
        old, new = _commit("old", 1), _commit("new", 5)
        issue = Issue(
            1,
            related_commits=[
                ReferencedLink(new, User("b"), T0 + timedelta(days=9)),
                ReferencedLink(old, User("a"), T0 + timedelta(days=3)),
                ReferencedLink(new, User("a"), T0 + timedelta(days=6)),
                ReferencedLink(Commit("stub"), User("a"), T0),
            ],
        )
        issue.freeze()
        assert [link.target.hash for link in issue.related_commits] == ["old", "new"]
        # the earliest reference wins
        assert issue.related_commits[1].referenced_at == T0 + timedelta(days=6)

    def test_related_issues_keep_earliest_reference(self):
        issue = Issue(
            1,
            related_issues=[
                ReferencedLink(2, User("late"), T0 + timedelta(days=2)),
                ReferencedLink(2, User("early"), T0),
                ReferencedLink(3, User("late"), T0 + timedelta(days=1)),
            ],
        )
        issue.freeze()
        assert [(link.target, link.user.login) for link in issue.related_issues] == [
            (2, "early"),
            (3, "late"),
        ]

    def test_pull_request(self):
        pr = PullRequest(5, state=State.CLOSED, merged_at=T0, commits=["a", "b", "a"])
        assert pr.is_pull_request
        assert not Issue(1).is_pull_request
        assert pr.pr_state is State.MERGED
        pr.freeze()
        assert pr.commits == ("a", "b")
        with pytest.raises(FrozenIssueError):
            pr.branch = "x"
