"""Tests for issue resolution against in-memory API payloads."""

from __future__ import annotations

import asyncio

import pytest
from fakes import API, FakeOracle, commit_record, issue_record

from ghgraph.exceptions import FrozenIssueError
from ghgraph.models import Commit, PullRequest, ReferencedEvent, parse_datetime
from ghgraph.resolver import commit_from_record

SHA = "0123456789abcdef0123456789abcdef01234567"
OTHER = "fedcba9876543210fedcba9876543210fedcba98"


def _pull(number: int, *, fork: str | None = "fork/repo", merged_at: str | None = None) -> dict:
    repo = {"full_name": fork, "clone_url": f"https://github.com/{fork}.git"} if fork else None
    return {
        "number": number,
        "head": {"ref": "feature", "sha": SHA, "repo": repo},
        "base": {"ref": "main", "sha": OTHER, "repo": {"full_name": "org/repo"}},
        "merged_at": merged_at,
    }


class TestCommitFromRecord:
    def test_fields(self):
        commit = commit_from_record(commit_record(SHA, parents=[OTHER]))
        assert commit.hash == SHA
        assert commit.author.name == "Bob"
        assert commit.author.login == "bob"
        assert commit.parents == [OTHER]
        assert commit.author_time.day == 5
        assert not commit.in_git


class TestResolveIssue:
    @pytest.mark.anyio
    async def test_plain_issue(self, make_resolver):
        comments = [
            {"body": "second", "user": {"login": "carol"}, "created_at": "2024-02-02T00:00:00Z"},
            {"body": "first", "user": {"login": "bob"}, "created_at": "2024-02-01T00:00:00Z"},
        ]
        resolver, fetcher, cache = make_resolver({f"{API}/issues/3/comments": comments})

        issue = await resolver.resolve(issue_record(3, "nothing to see"))

        assert issue.frozen
        assert not issue.is_pull_request
        assert issue.title == "Issue 3"
        assert issue.user is cache.users.get("alice")
        assert [c.target for c in issue.comments] == ["first", "second"]
        assert issue.comments[0].user is cache.users.get("bob")
        assert cache.issues.get(3) is issue

    @pytest.mark.anyio
    async def test_frozen_issue_rejects_changes(self, make_resolver):
        resolver, _, _ = make_resolver({})
        issue = await resolver.resolve(issue_record(1))
        with pytest.raises(FrozenIssueError):
            issue.body = "edited"

    @pytest.mark.anyio
    async def test_text_references(self, make_resolver):
        resolver, _, _ = make_resolver(
            {
                f"{API}/issues/42": issue_record(42),
                f"{API}/commits/{SHA}": commit_record(SHA),
            }
        )

        issue = await resolver.resolve(issue_record(10, f"Fixes #42 and {SHA}"))

        assert [link.target for link in issue.related_issues] == [42]
        assert issue.related_issues[0].user.login == "alice"
        assert [link.target.hash for link in issue.related_commits] == [SHA]

    @pytest.mark.anyio
    async def test_missing_issue_reference_is_dropped_and_fetched_once(self, make_resolver):
        comments = [
            {"body": "also #42", "user": {"login": "bob"}, "created_at": "2024-02-01T00:00:00Z"}
        ]
        resolver, fetcher, _ = make_resolver({f"{API}/issues/10/comments": comments})

        issue = await resolver.resolve(issue_record(10, "Fixes #42"))

        assert issue.related_issues == ()
        assert fetcher.calls[f"{API}/issues/42"] == 1

    @pytest.mark.anyio
    async def test_self_reference_ignored(self, make_resolver):
        resolver, _, _ = make_resolver({})
        issue = await resolver.resolve(issue_record(4, "this is #4"))
        assert issue.related_issues == ()

    @pytest.mark.anyio
    async def test_unknown_hash_candidates_are_dropped(self, make_resolver):
        resolver, fetcher, cache = make_resolver({})
        issue = await resolver.resolve(issue_record(4, "added a decade ago"))
        assert issue.related_commits == ()
        assert fetcher.calls[f"{API}/commits/decade"] == 1
        assert cache.commit_refs.is_miss("decade")

    @pytest.mark.anyio
    async def test_reference_cycle_terminates(self, make_resolver):
        resolver, fetcher, cache = make_resolver(
            {f"{API}/issues/2": issue_record(2, "duplicate of #1")}
        )

        first = await asyncio.wait_for(resolver.resolve(issue_record(1, "see #2")), 2.0)
        second = cache.issues.get(2)

        assert first.frozen
        assert second.frozen
        assert [link.target for link in first.related_issues] == [2]
        assert [link.target for link in second.related_issues] == [1]
        assert fetcher.calls[f"{API}/issues/1/comments"] == 1
        assert fetcher.calls[f"{API}/issues/2/comments"] == 1

    @pytest.mark.anyio
    async def test_concurrent_resolution_fetches_once(self, make_resolver):
        resolver, fetcher, _ = make_resolver({f"{API}/issues/5": issue_record(5)}, delay=0.01)

        first, second = await asyncio.gather(
            resolver.resolve_issue(5), resolver.resolve_issue(5)
        )

        assert first is second
        assert first.frozen
        assert fetcher.calls[f"{API}/issues/5"] == 1
        assert fetcher.calls[f"{API}/issues/5/comments"] == 1

    @pytest.mark.anyio
    async def test_unknown_number(self, make_resolver):
        resolver, _, _ = make_resolver({})
        assert await resolver.resolve_issue(77) is None

    @pytest.mark.anyio
    async def test_malformed_record(self, make_resolver):
        resolver, _, _ = make_resolver({})
        assert await resolver.resolve({"title": "no number"}) is None

    @pytest.mark.anyio
    async def test_refresh_rebuilds(self, make_resolver):
        resolver, _, cache = make_resolver({})
        old = await resolver.resolve(issue_record(6))
        new = await resolver.resolve(issue_record(6, title="Renamed"), refresh=True)
        assert new is not old
        assert new.title == "Renamed"
        assert cache.issues.get(6) is new

    @pytest.mark.anyio
    async def test_failed_refresh_keeps_cached_issue(self, make_resolver, monkeypatch):
        resolver, _, cache = make_resolver({})
        old = await resolver.resolve(issue_record(6))

        async def _broken(raw, pull):
            raise RuntimeError("boom")

        monkeypatch.setattr(resolver, "_populate", _broken)
        with pytest.raises(RuntimeError):
            await resolver.resolve(issue_record(6, title="Renamed"), refresh=True)

        assert cache.issues.get(6) is old
        assert cache.issue_records.get(6) is None

    @pytest.mark.anyio
    async def test_refresh_without_pull_details_keeps_cached_pull_request(self, make_resolver):
        pull = {"head": {"ref": "x", "sha": "abc"}, "base": {"ref": "main", "sha": "def"}}
        resolver, fetcher, cache = make_resolver({f"{API}/pulls/3": pull})
        old = await resolver.resolve(issue_record(3, pull=True))
        del fetcher.responses[f"{API}/pulls/3"]

        again = await resolver.resolve(issue_record(3, pull=True, title="New"), refresh=True)

        assert again is old
        assert isinstance(cache.issues.get(3), PullRequest)
        assert cache.pull_records.get(3) == pull


class TestEvents:
    @pytest.mark.anyio
    async def test_unknown_referenced_commit_becomes_stub(self, make_resolver):
        events = [
            {
                "event": "referenced",
                "commit_id": OTHER,
                "actor": {"login": "dave"},
                "created_at": "2024-03-01T00:00:00Z",
            }
        ]
        resolver, _, cache = make_resolver({f"{API}/issues/9/events": events})

        issue = await resolver.resolve(issue_record(9))

        event = issue.events[0]
        assert isinstance(event, ReferencedEvent)
        assert event.commit.is_stub
        assert event.commit is cache.commits.get(OTHER)
        # no author time: left out of the related commits
        assert issue.related_commits == ()

    @pytest.mark.anyio
    async def test_referenced_commit_links_to_actor(self, make_resolver):
        events = [
            {
                "event": "referenced",
                "commit_id": SHA,
                "actor": {"login": "dave"},
                "created_at": "2024-03-01T00:00:00Z",
            }
        ]
        resolver, _, _ = make_resolver(
            {f"{API}/issues/9/events": events, f"{API}/commits/{SHA}": commit_record(SHA)}
        )

        issue = await resolver.resolve(issue_record(9))

        assert [link.target.hash for link in issue.related_commits] == [SHA]
        assert issue.related_commits[0].user.login == "dave"

    @pytest.mark.anyio
    async def test_local_clone_preferred(self, make_resolver):
        oracle = FakeOracle({SHA: ("2024-01-03T00:00:00Z", [])})
        resolver, fetcher, _ = make_resolver({}, oracle=oracle)

        issue = await resolver.resolve(issue_record(9, f"landed in {SHA[:10]}"))

        commit = issue.related_commits[0].target
        assert commit.hash == SHA
        assert commit.in_git
        assert fetcher.calls[f"{API}/commits/{SHA[:10]}"] == 0


class TestPullRequests:
    @pytest.mark.anyio
    async def test_pull_request_details(self, make_resolver):
        resolver, _, cache = make_resolver(
            {
                f"{API}/pulls/8": _pull(8),
                f"{API}/pulls/8/commits": [commit_record(SHA), commit_record(SHA)],
            }
        )

        pr = await resolver.resolve(issue_record(8, pull=True))

        assert isinstance(pr, PullRequest)
        assert pr.is_pull_request
        assert pr.branch == "fork/repo/feature"
        assert pr.head.clone_url == "https://github.com/fork/repo.git"
        assert pr.base.ref == "main"
        assert pr.commits == (SHA,)
        assert [link.target.hash for link in pr.related_commits] == [SHA]
        assert pr.related_commits[0].target is cache.commits.get(SHA)

    @pytest.mark.anyio
    async def test_pull_request_commits_linked_to_committer(self, make_resolver):
        resolver, _, cache = make_resolver(
            {
                f"{API}/pulls/8": _pull(8),
                f"{API}/pulls/8/commits": [commit_record(SHA, committed="2024-01-07T08:00:00Z")],
            }
        )

        pr = await resolver.resolve(issue_record(8, pull=True))

        link = pr.related_commits[0]
        assert link.user is cache.users.get("carol")
        assert link.user.email == "carol@example.com"
        assert link.referenced_at == parse_datetime("2024-01-07T08:00:00Z")

    @pytest.mark.anyio
    async def test_pull_request_commit_falls_back_to_author(self, make_resolver):
        authored = commit_record(SHA)
        del authored["commit"]["committer"]
        resolver, _, _ = make_resolver(
            {f"{API}/pulls/8": _pull(8), f"{API}/pulls/8/commits": [authored]}
        )

        pr = await resolver.resolve(issue_record(8, pull=True))

        link = pr.related_commits[0]
        assert link.user.login == "bob"
        assert link.referenced_at == parse_datetime("2024-01-05T12:00:00Z")

    def test_unsigned_commit_linked_to_opener(self, make_resolver):
        resolver, _, cache = make_resolver({})
        opener = cache.user("alice")
        pr = PullRequest(8, user=opener, created_at=parse_datetime("2024-01-09T10:00:00Z"))

        link = resolver._pull_commit_link(Commit(OTHER), pr)

        assert link.user is opener
        assert link.referenced_at == pr.created_at

    @pytest.mark.anyio
    async def test_deleted_fork_branch_is_head_sha(self, make_resolver):
        resolver, _, _ = make_resolver({f"{API}/pulls/8": _pull(8, fork=None)})
        pr = await resolver.resolve(issue_record(8, pull=True))
        assert pr.head.repo is None
        assert pr.branch == SHA

    @pytest.mark.anyio
    async def test_merged_state(self, make_resolver):
        resolver, _, _ = make_resolver(
            {f"{API}/pulls/8": _pull(8, merged_at="2024-01-20T00:00:00Z")}
        )
        pr = await resolver.resolve(issue_record(8, pull=True, state="closed"))
        assert pr.pr_state.value == "merged"

    @pytest.mark.anyio
    async def test_unavailable_details_skip_the_pull_request(self, make_resolver):
        resolver, _, cache = make_resolver({})
        assert await resolver.resolve(issue_record(7, pull=True)) is None
        assert 7 not in cache.issues
