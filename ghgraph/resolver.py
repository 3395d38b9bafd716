"""Materializes issues and pull requests with all their references."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from ghgraph.ancestry import AncestryOracle
from ghgraph.cache import RECURSION, RepositoryCache
from ghgraph.events import parse_event
from ghgraph.fetcher import GitHubFetcher
from ghgraph.models import (
    Commit,
    Event,
    Issue,
    PullRequest,
    ReferencedEvent,
    ReferencedLink,
    RefInfo,
    Signature,
    State,
    User,
    parse_datetime,
)
from ghgraph.ref_parser import extract_hashes, extract_issue_numbers
from ghgraph.users import UserResolver

log = structlog.get_logger("ghgraph.resolver")


def commit_from_record(raw: dict[str, Any]) -> Commit:
    """Build a commit from a ``/commits/{ref}`` or ``/pulls/{n}/commits`` record."""
    data = raw.get("commit") or {}
    return Commit(
        hash=raw["sha"],
        author=_signature(data.get("author"), raw.get("author")),
        committer=_signature(data.get("committer"), raw.get("committer")),
        message=data.get("message"),
        parents=[p["sha"] for p in raw.get("parents") or [] if p.get("sha")],
    )


def _signature(git: dict[str, Any] | None, account: dict[str, Any] | None) -> Signature | None:
    if not git:
        return None
    return Signature(
        name=git.get("name"),
        email=git.get("email"),
        date=parse_datetime(git.get("date")),
        login=(account or {}).get("login"),
    )


def _ref_info(raw: dict[str, Any] | None) -> RefInfo | None:
    if not raw:
        return None
    repo = raw.get("repo") or {}
    return RefInfo(
        ref=raw.get("ref") or "",
        sha=raw.get("sha") or "",
        repo=repo.get("full_name"),
        clone_url=repo.get("clone_url"),
    )


def _branch(head: RefInfo | None) -> str | None:
    if head is None:
        return None
    if head.repo:
        return f"{head.repo}/{head.ref}"
    return head.sha


class GraphResolver:
    """Builds frozen issues, resolving every reference through the cache.

    Issue and pull request records, commits and users are looked up at most
    once per repository. An issue that is referenced while it is still being
    resolved (a reference cycle) is handed out as its unfrozen placeholder.
    """

    def __init__(
        self,
        fetcher: GitHubFetcher,
        cache: RepositoryCache,
        users: UserResolver,
        api_path: str,
        oracle: AncestryOracle | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._cache = cache
        self._users = users
        self._api_path = api_path
        self._oracle = oracle

    # ── top level ──────────────────────────────────────────────────────────

    async def resolve(self, raw: dict[str, Any], *, refresh: bool = False) -> Issue | None:
        """Resolve an issue record and wait until it is frozen.

        Only for callers outside of a running resolution.
        """
        issue = await self.resolve_record(raw, refresh=refresh)
        if issue is not None and not issue.frozen:
            issue = await self._cache.issues.wait(issue.number)
        return issue

    async def resolve_issue(self, number: int) -> Issue | None:
        """Like :meth:`resolve` for an issue number."""
        issue = await self.resolve_number(number)
        if issue is not None and not issue.frozen:
            issue = await self._cache.issues.wait(number)
        return issue

    # ── issues ─────────────────────────────────────────────────────────────

    async def resolve_record(self, raw: dict[str, Any], *, refresh: bool = False) -> Issue | None:
        """Return the issue for a raw ``/issues`` record, possibly as a placeholder.

        With *refresh*, a cached issue is built again from *raw*. The cached
        version stays if the rebuild fails. Returns None when the pull request
        details of a pull request cannot be fetched.
        """
        number = raw.get("number")
        if not isinstance(number, int):
            log.warning("resolver.malformed_record", record_keys=sorted(raw))
            return None
        if refresh:
            return await self._refresh(number, raw)
        return await self._resolve_new(number, raw)

    async def _refresh(self, number: int, raw: dict[str, Any]) -> Issue | None:
        previous = self._cache.issues.get(number)
        previous_raw = self._cache.issue_records.get(number)
        previous_pull = self._cache.pull_records.get(number)

        self._cache.issues.evict(number)
        self._cache.issue_records.seed(number, raw)
        self._cache.pull_records.evict(number)
        try:
            issue = await self._resolve_new(number, raw)
        except BaseException:
            self._restore(number, previous, previous_raw, previous_pull)
            raise
        if issue is None:
            self._restore(number, previous, previous_raw, previous_pull)
            return previous
        return issue

    def _restore(
        self,
        number: int,
        issue: Issue | None,
        raw: dict[str, Any] | None,
        pull: dict[str, Any] | None,
    ) -> None:
        if issue is None or not issue.frozen or number in self._cache.issues:
            return
        log.warning("resolver.refresh_failed", number=number)
        self._cache.issues.seed(number, issue)
        if raw is not None:
            self._cache.issue_records.seed(number, raw)
        else:
            self._cache.issue_records.evict(number)
        if pull is not None:
            self._cache.pull_records.seed(number, pull)

    async def _resolve_new(self, number: int, raw: dict[str, Any]) -> Issue | None:
        existing = self._cache.issues.get(number)
        if existing is not None:
            return existing

        pull = None
        if raw.get("pull_request") is not None:
            pull = await self._cache.pull_records.lookup_or_insert(
                number,
                lambda: self._fetcher.fetch_one(f"{self._api_path}/pulls/{number}"),
                wait=True,
            )
            if not pull:
                log.warning("resolver.pull_request_unavailable", number=number)
                return None

        issue = await self._cache.issues.lookup_or_insert(
            number, lambda: self._populate(raw, pull)
        )
        if issue is RECURSION:
            return self._cache.issues.get(number)
        return issue

    async def resolve_number(self, number: int) -> Issue | None:
        """Return the issue with *number*, fetching its record if unknown."""
        existing = self._cache.issues.get(number)
        if existing is not None:
            return existing
        raw = await self._cache.issue_records.lookup_or_insert(
            number,
            lambda: self._fetcher.fetch_one(f"{self._api_path}/issues/{number}"),
            wait=True,
        )
        if not raw:
            return None
        return await self.resolve_record(raw)

    async def _populate(self, raw: dict[str, Any], pull: dict[str, Any] | None) -> Issue:
        number = raw["number"]
        issue = self._build(raw, pull)
        # published before the first await so that cycles find it
        self._cache.issues.provide(number, issue)

        comments_raw, events_raw, commits_raw = await asyncio.gather(
            self._fetcher.fetch(f"{self._api_path}/issues/{number}/comments"),
            self._fetcher.fetch(f"{self._api_path}/issues/{number}/events"),
            (
                self._fetcher.fetch(f"{self._api_path}/pulls/{number}/commits")
                if pull
                else _nothing()
            ),
        )

        issue.comments = [
            ReferencedLink(
                c.get("body") or "",
                self._users.from_record(c.get("user")),
                parse_datetime(c.get("created_at")),
            )
            for c in comments_raw or []
        ]
        issue.events = await self._events(events_raw or [])

        related_commits = [
            ReferencedLink(event.commit, event.user, event.created_at)
            for event in issue.events
            if isinstance(event, ReferencedEvent) and event.commit is not None
        ]
        if isinstance(issue, PullRequest):
            pr_commits = [
                self._cache.intern_commit(commit_from_record(c))
                for c in commits_raw or []
                if c.get("sha")
            ]
            issue.commits = [c.hash for c in pr_commits]
            related_commits.extend(self._pull_commit_link(c, issue) for c in pr_commits)

        texts = [(issue.body, issue.user, issue.created_at)]
        texts.extend((c.target, c.user, c.referenced_at) for c in issue.comments)
        related_commits.extend(await self._commit_links(texts))
        issue.related_commits = related_commits
        issue.related_issues = await self._issue_links(number, texts)

        issue.freeze()
        log.debug(
            "resolver.issue_resolved",
            number=number,
            pull_request=issue.is_pull_request,
            comments=len(issue.comments),
            related_commits=len(issue.related_commits),
            related_issues=len(issue.related_issues),
        )
        return issue

    def _pull_commit_link(self, commit: Commit, pr: Issue) -> ReferencedLink[Commit]:
        """Link a commit of *pr* to its committer, else its author, else the PR opener."""
        for sig in (commit.committer, commit.author):
            if sig is None or (sig.name is None and sig.email is None and sig.date is None):
                continue
            user = self._users.from_record(
                {"login": sig.login, "name": sig.name, "email": sig.email}
            )
            return ReferencedLink(commit, user, sig.date)
        return ReferencedLink(commit, pr.user, pr.created_at)

    def _build(self, raw: dict[str, Any], pull: dict[str, Any] | None) -> Issue:
        common: dict[str, Any] = {
            "number": raw["number"],
            "title": raw.get("title") or "",
            "body": raw.get("body") or "",
            "user": self._users.from_record(raw.get("user")),
            "created_at": parse_datetime(raw.get("created_at")),
            "closed_at": parse_datetime(raw.get("closed_at")),
            "state": State.from_string(raw.get("state")),
            "url": raw.get("html_url"),
        }
        if pull is None:
            return Issue(**common)
        head = _ref_info(pull.get("head"))
        return PullRequest(
            **common,
            head=head,
            base=_ref_info(pull.get("base")),
            merged_at=parse_datetime(pull.get("merged_at")),
            branch=_branch(head),
        )

    async def _events(self, events_raw: list[dict[str, Any]]) -> list[Event]:
        events = [parse_event(e, self._users.from_record) for e in events_raw]
        referenced = [e for e in events if isinstance(e, ReferencedEvent) and e.commit_id]
        commits = await asyncio.gather(
            *(self.resolve_commit(e.commit_id or "", stub=True) for e in referenced)
        )
        for event, commit in zip(referenced, commits, strict=True):
            event.commit = commit
        return events

    async def _commit_links(
        self, texts: list[tuple[str, User | None, Any]]
    ) -> list[ReferencedLink[Commit]]:
        candidates = [(sha, user, at) for text, user, at in texts for sha in extract_hashes(text)]
        commits = await asyncio.gather(*(self.resolve_commit(sha) for sha, _, _ in candidates))
        return [
            ReferencedLink(commit, user, at)
            for commit, (_, user, at) in zip(commits, candidates, strict=True)
            if commit is not None
        ]

    async def _issue_links(
        self, number: int, texts: list[tuple[str, User | None, Any]]
    ) -> list[ReferencedLink[int]]:
        links = []
        for text, user, at in texts:
            for candidate in extract_issue_numbers(text):
                if candidate == number:
                    continue
                if await self.resolve_number(candidate) is not None:
                    links.append(ReferencedLink(candidate, user, at))
        return links

    # ── commits ────────────────────────────────────────────────────────────

    async def resolve_commit(self, ref: str, *, stub: bool = False) -> Commit | None:
        """Look *ref* up in the cache, the local clone, then the remote.

        With *stub*, an unknown commit becomes a stub instead of None.
        """
        existing = self._cache.commits.get(ref)
        if existing is not None and not existing.is_stub:
            return existing
        commit = await self._cache.commit_refs.lookup_or_insert(
            ref, lambda: self._load_commit(ref), wait=True
        )
        if commit is None and stub:
            return self._cache.commit_stub(ref)
        return commit  # type: ignore[return-value]

    async def _load_commit(self, ref: str) -> Commit | None:
        commit = await self._oracle.commit(ref) if self._oracle is not None else None
        if commit is None:
            data = await self._fetcher.fetch_one(f"{self._api_path}/commits/{ref}")
            if data and data.get("sha"):
                commit = commit_from_record(data)
        if commit is None:
            return None
        return self._cache.intern_commit(commit)


async def _nothing() -> None:
    return None
