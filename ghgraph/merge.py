"""Merge target and merge base of pull requests."""

from __future__ import annotations

import structlog

from ghgraph.ancestry import AncestryOracle
from ghgraph.cache import RepositoryCache
from ghgraph.models import Commit, PullRequest, ReferencedEvent, State

log = structlog.get_logger("ghgraph.merge")

# Returned when a merged pull request's merge commit cannot be made sense of.
IMPOSSIBLE_COMMIT = Commit(hash="0" * 40, message="impossible commit")


class MergeResolver:
    """Finds the commit a pull request was, or would be, merged into.

    For a merged pull request both sides are reachable from the base branch,
    so the target is taken from the parents of the actual merge commit.
    """

    def __init__(
        self, oracle: AncestryOracle, cache: RepositoryCache, remote: str = "origin"
    ) -> None:
        self._oracle = oracle
        self._cache = cache
        self._remote = remote

    async def tip(self, pr: PullRequest) -> Commit | None:
        """The head commit of *pr*, if it is part of the local history."""
        if pr.head is None or not pr.head.sha:
            return None
        commit = await self._oracle.commit(pr.head.sha)
        return self._cache.intern_commit(commit) if commit is not None else None

    async def merge_target(self, pr: PullRequest) -> Commit | None:
        """Return the merge target of *pr*.

        None if the base branch is gone; :data:`IMPOSSIBLE_COMMIT` if a
        merged pull request has no sensible merge commit.
        """
        state = pr.pr_state
        if state is State.MERGED:
            return await self._merged_target(pr)

        if pr.base is None:
            return None
        base_branch = f"{self._remote}/{pr.base.ref}"
        base_tip = await self._oracle.branch_tip(base_branch)
        if base_tip is None:
            log.debug("merge.base_branch_missing", number=pr.number, branch=base_branch)
            return None

        if state is State.OPEN:
            return self._cache.intern_commit(base_tip)
        return await self._declined_target(pr, base_branch, base_tip)

    async def merge_base(self, pr: PullRequest) -> Commit | None:
        """Common ancestor of the tip of *pr* and its merge target."""
        target = await self.merge_target(pr)
        if target is None or target is IMPOSSIBLE_COMMIT:
            return None
        tip = await self.tip(pr)
        if tip is None:
            return None
        base = await self._oracle.merge_base(tip.hash, target.hash)
        return self._cache.intern_commit(base) if base is not None else None

    async def _merged_target(self, pr: PullRequest) -> Commit:
        merge = next(
            (e for e in pr.events if isinstance(e, ReferencedEvent) and e.event == "merged"),
            None,
        )
        if merge is None or not merge.commit_id:
            log.warning("merge.no_merge_event", number=pr.number)
            return IMPOSSIBLE_COMMIT

        tip = await self.tip(pr)
        if tip is None:
            log.warning("merge.no_tip", number=pr.number)
            return IMPOSSIBLE_COMMIT

        parents = await self._oracle.parents(merge.commit_id)
        others = [p for p in parents if p.hash != tip.hash]
        if len(others) != 1 or len(others) == len(parents):
            log.warning(
                "merge.unexpected_parents",
                number=pr.number,
                merge_commit=merge.commit_id,
                tip=tip.hash,
                parents=[p.hash for p in parents],
            )
            return IMPOSSIBLE_COMMIT
        return self._cache.intern_commit(others[0])

    async def _declined_target(
        self, pr: PullRequest, base_branch: str, base_tip: Commit
    ) -> Commit | None:
        tip = await self.tip(pr)
        if tip is None or tip.author_time is None:
            log.debug("merge.no_tip", number=pr.number)
            return None

        base = await self._oracle.merge_base(tip.hash, base_tip.hash)
        if base is None:
            return None

        # newest first: the first hit is the latest commit the tip could be merged into
        for commit in await self._oracle.commits_before(tip.author_time, base_branch):
            if commit.hash == base.hash or await self._oracle.is_ancestor(commit.hash, base.hash):
                return self._cache.intern_commit(commit)
        return None
