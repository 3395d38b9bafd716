"""Public entry point: the issue / pull request graph of one GitHub repository."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

import httpx
import structlog

from ghgraph.ancestry import AncestryOracle
from ghgraph.cache import RepositoryCache
from ghgraph.core.github import repo_api_path
from ghgraph.core.settings import Settings
from ghgraph.credentials import CredentialPool
from ghgraph.exceptions import GraphError, IssueIndexError
from ghgraph.fetcher import GitHubFetcher
from ghgraph.merge import MergeResolver
from ghgraph.models import Commit, Issue, PullRequest, State, User
from ghgraph.resolver import GraphResolver
from ghgraph.snapshot import read_snapshot, restore, write_snapshot
from ghgraph.users import UserResolver

log = structlog.get_logger("ghgraph.repository")

T = TypeVar("T")
R = TypeVar("R")

_MIN_TIME = datetime.min.replace(tzinfo=timezone.utc)


def _by_creation(issue: Issue) -> tuple[datetime, int]:
    return issue.created_at or _MIN_TIME, issue.number


class GitHubRepository:
    """Issues, pull requests, commits and users of one repository.

    All caches belong to this instance. Independent resolutions run in
    parallel, bounded by the number of credentials; merge computations need
    an :class:`AncestryOracle` for a local clone.
    """

    def __init__(
        self,
        repo_url: str,
        fetcher: GitHubFetcher,
        oracle: AncestryOracle | None = None,
        *,
        workers: int | None = None,
    ) -> None:
        self.repo_url = repo_url
        self.api_path = repo_api_path(repo_url)
        self.cache = RepositoryCache()
        self._fetcher = fetcher
        self._oracle = oracle
        self._workers = workers or len(fetcher.pool)
        self.users = UserResolver(fetcher, self.cache)
        self.resolver = GraphResolver(fetcher, self.cache, self.users, self.api_path, oracle)
        self._merge = MergeResolver(oracle, self.cache) if oracle is not None else None
        self._issues: list[Issue] | None = None
        self._pull_requests: list[PullRequest] | None = None

    @classmethod
    def from_settings(
        cls,
        repo_url: str,
        settings: Settings,
        oracle: AncestryOracle | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> GitHubRepository:
        pool = CredentialPool(
            settings.credential_secrets(), wait_on_exhaustion=settings.wait_on_exhaustion
        )
        fetcher = GitHubFetcher(
            pool,
            api_url=settings.api_url,
            per_page=settings.per_page,
            timeout=settings.timeout,
            transport=transport,
        )
        return cls(repo_url, fetcher, oracle)

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._fetcher.close()

    async def __aenter__(self) -> GitHubRepository:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── issues ─────────────────────────────────────────────────────────────

    async def list_issues(
        self, include_pull_requests: bool = True, since: datetime | None = None
    ) -> list[Issue]:
        """All issues of the repository, ordered by creation time.

        The first call fetches the whole issue list. With *since*, only
        issues changed since then are fetched and rebuilt; they replace
        their cached versions and nothing is ever removed.

        Raises :class:`IssueIndexError` if the issue list cannot be fetched.
        """
        if self._issues is None or since is not None:
            params: dict[str, Any] = {"state": "all"}
            if since is not None:
                params["since"] = since.isoformat()
            records = await self._fetcher.fetch(f"{self.api_path}/issues", params)
            if records is None:
                raise IssueIndexError(f"cannot fetch the issue list of {self.repo_url}")
            log.info(
                "repository.issue_index",
                repo=self.repo_url,
                records=len(records),
                since=params.get("since"),
            )

            for raw in records:
                if isinstance(raw.get("number"), int):
                    self.cache.issue_records.seed(raw["number"], raw)
            await self._run_all(
                records,
                lambda raw: self.resolver.resolve(raw, refresh=since is not None),
                "repository.resolve_failed",
            )

            self._issues = sorted(self.cache.issues.values(), key=_by_creation)
            if since is not None:
                self._pull_requests = None

        if include_pull_requests:
            return list(self._issues)
        return [issue for issue in self._issues if not issue.is_pull_request]

    async def get_issue(self, number: int) -> Issue | None:
        """One issue or pull request by number, resolved if not cached."""
        return await self.resolver.resolve_issue(number)

    # ── pull requests ──────────────────────────────────────────────────────

    async def list_pull_requests(self, state_filter: State = State.ANY) -> list[PullRequest]:
        """Pull requests whose state passes *state_filter*, ordered by creation time.

        The list is built once. Pull requests whose commits cannot be
        verified locally are left out; each is logged with the reason.
        """
        if self._pull_requests is None:
            issues = await self.list_issues(include_pull_requests=True)
            kept = []
            # git cannot add and fetch remotes of one clone concurrently
            for pr in (i for i in issues if isinstance(i, PullRequest)):
                if await self._keep_pull_request(pr):
                    kept.append(pr)
            self._pull_requests = kept
            log.info("repository.pull_requests", repo=self.repo_url, kept=len(kept))
        return [pr for pr in self._pull_requests if state_filter.matches(pr.pr_state)]

    def get_pull_request_by_branch(self, name: str) -> PullRequest | None:
        """The pull request whose branch is *name* (``<fork>/<ref>`` or head sha)."""
        if self._pull_requests is not None:
            candidates: Iterable[Issue] = self._pull_requests
        else:
            candidates = self.cache.issues.values()
        for issue in candidates:
            if isinstance(issue, PullRequest) and issue.branch == name:
                return issue
        return None

    async def _keep_pull_request(self, pr: PullRequest) -> bool:
        state = pr.pr_state
        fork = pr.head.repo if pr.head is not None else None

        if fork is None and State.UNMERGED.matches(state):
            log.warning("repository.pr_dropped", number=pr.number, reason="no fork, not merged")
            return False
        if self._oracle is None:
            return True

        if fork is not None:
            fetched = bool(pr.head.clone_url) and await self._oracle.fetch_remote(
                fork, pr.head.clone_url
            )
            if not fetched and await self._oracle.branch_tip(f"{fork}/{pr.head.ref}") is None:
                log.warning(
                    "repository.pr_dropped", number=pr.number, reason="source branch deleted"
                )
                return False

        if await self.tip(pr) is None:
            log.warning("repository.pr_dropped", number=pr.number, reason="tip not in history")
            return False

        if fork is None:
            # only merged pull requests get here
            log.info("repository.pr_without_fork", number=pr.number, state=state.value)
        return True

    # ── merges ─────────────────────────────────────────────────────────────

    async def tip(self, pr: PullRequest) -> Commit | None:
        return await self._merge_resolver().tip(pr)

    async def merge_target(self, pr: PullRequest) -> Commit | None:
        return await self._merge_resolver().merge_target(pr)

    async def merge_base(self, pr: PullRequest) -> Commit | None:
        return await self._merge_resolver().merge_base(pr)

    def _merge_resolver(self) -> MergeResolver:
        if self._merge is None:
            raise GraphError(f"merge queries for {self.repo_url} need a local clone")
        return self._merge

    # ── users ──────────────────────────────────────────────────────────────

    async def enrich_users(self, *, guess_emails: bool = False) -> list[User]:
        """Fetch the profile of every known user, optionally guessing emails."""
        users = self.cache.users.values()
        await self._run_all(
            users,
            lambda user: self.users.enrich(user, guess_email=guess_emails),
            "repository.enrich_failed",
        )
        return users

    # ── snapshots ──────────────────────────────────────────────────────────

    def load_snapshot(self, path: str | Path) -> list[Issue]:
        """Seed the caches from a snapshot written by :meth:`save_snapshot`."""
        issues = restore(read_snapshot(path), self.cache)
        self._issues = None
        self._pull_requests = None
        return issues

    def save_snapshot(self, path: str | Path) -> int:
        """Write all resolved issues to *path*; returns how many were written."""
        return write_snapshot(path, self.cache.issues.values())

    # ── internal ───────────────────────────────────────────────────────────

    async def _run_all(
        self, items: Iterable[T], work: Callable[[T], Awaitable[R]], failure_event: str
    ) -> list[R | None]:
        """Run *work* for every item, at most ``workers`` at a time.

        A failure is logged and becomes None; it does not stop the others.
        """
        semaphore = asyncio.Semaphore(self._workers)

        async def _bounded(item: T) -> R:
            async with semaphore:
                return await work(item)

        items = list(items)
        results = await asyncio.gather(*(_bounded(i) for i in items), return_exceptions=True)
        out: list[R | None] = []
        for item, result in zip(items, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                log.error(failure_event, item=repr(item)[:120], error=str(result))
                out.append(None)
            else:
                out.append(result)
        return out
