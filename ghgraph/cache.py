"""Per-repository entity caches with an in-progress guard.

All bookkeeping between two awaits happens without yielding to the event
loop, so checking a key and marking it as being worked on is atomic for all
tasks of one loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Hashable, Iterator
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog

from ghgraph.models import Commit, Issue, User

log = structlog.get_logger("ghgraph.cache")

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class _Recursion:
    """Returned for a key that is already being produced further up the call chain."""

    def __repr__(self) -> str:
        return "RECURSION"

    def __bool__(self) -> bool:
        return False


RECURSION = _Recursion()


class EntityCache(Generic[K, V]):
    """Cache of one entity kind, keyed by its stable id.

    Besides found entries it remembers misses, so an unknown key is only
    looked up once. Keys currently being produced live in the working set.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: dict[K, V] = {}
        self._misses: set[K] = set()
        self._working: dict[K, asyncio.Future[V | None]] = {}
        self._placeholders: dict[K, V] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[K]:
        return iter(self._entries)

    def values(self) -> list[V]:
        return list(self._entries.values())

    def get(self, key: K) -> V | None:
        """Return the cached entry, or the placeholder of a key being produced."""
        if key in self._entries:
            return self._entries[key]
        return self._placeholders.get(key)

    def is_miss(self, key: K) -> bool:
        return key in self._misses

    def is_working(self, key: K) -> bool:
        return key in self._working

    async def lookup_or_insert(
        self,
        key: K,
        producer: Callable[[], Awaitable[V | None]],
        *,
        wait: bool = False,
    ) -> V | None | _Recursion:
        """Return the entry for *key*, running *producer* at most once for it.

        A key that is already being produced yields :data:`RECURSION`, unless
        *wait* is set; then the caller shares the result of the running
        producer. Only use *wait* for producers that never look up keys of
        the same cache, otherwise a cycle waits on itself.

        ``None`` from the producer is remembered as a miss. If the producer
        raises, nothing is cached and waiting callers get ``None``.
        """
        if key in self._entries:
            return self._entries[key]
        if key in self._misses:
            return None

        running = self._working.get(key)
        if running is not None:
            if wait:
                return await asyncio.shield(running)
            log.debug("cache.recursion", cache=self.name, key=key)
            return RECURSION

        future: asyncio.Future[V | None] = asyncio.get_running_loop().create_future()
        self._working[key] = future
        try:
            value = await producer()
        except BaseException:
            self._finish(key)
            future.set_result(None)
            raise

        self._finish(key)
        if value is None:
            self._misses.add(key)
        else:
            self._entries[key] = value
        future.set_result(value)
        return value

    async def wait(self, key: K) -> V | None:
        """Wait for a running producer of *key* and return the cached result.

        Must not be called from inside that producer.
        """
        running = self._working.get(key)
        if running is not None:
            return await asyncio.shield(running)
        return self._entries.get(key)

    def provide(self, key: K, placeholder: V) -> None:
        """Publish a provisional value for a key that is being produced."""
        if key not in self._working:
            raise KeyError(f"{self.name}: {key!r} is not being produced")
        self._placeholders[key] = placeholder

    def intern(self, key: K, value: V, merge: Callable[[V, V], Any] | None = None) -> V:
        """Insert *value* unless *key* is cached; then *merge* it into the cached one.

        Returns the cache-resident instance.
        """
        existing = self._entries.get(key)
        if existing is not None:
            if merge is not None and existing is not value:
                merge(existing, value)
            return existing
        self._misses.discard(key)
        self._entries[key] = value
        return value

    def seed(self, key: K, value: V) -> None:
        """Store *value* for *key*, replacing any previous entry."""
        self._misses.discard(key)
        self._entries[key] = value

    def evict(self, key: K) -> None:
        self._entries.pop(key, None)
        self._misses.discard(key)

    def _finish(self, key: K) -> None:
        del self._working[key]
        self._placeholders.pop(key, None)


def _fill(existing: Commit, other: Commit) -> None:
    existing.fill(other)


@dataclass
class RepositoryCache:
    """All caches of one repository.

    ``commits`` is keyed by full hash and holds the shared instances,
    ``commit_refs`` maps every looked-up ref (abbreviated hash, branch) to
    them. ``issue_records`` and ``pull_records`` hold raw API records.
    """

    issues: EntityCache[int, Issue] = field(default_factory=lambda: EntityCache("issues"))
    issue_records: EntityCache[int, dict] = field(
        default_factory=lambda: EntityCache("issue_records")
    )
    pull_records: EntityCache[int, dict] = field(
        default_factory=lambda: EntityCache("pull_records")
    )
    commits: EntityCache[str, Commit] = field(default_factory=lambda: EntityCache("commits"))
    commit_refs: EntityCache[str, Commit] = field(
        default_factory=lambda: EntityCache("commit_refs")
    )
    users: EntityCache[str, User] = field(default_factory=lambda: EntityCache("users"))
    profiles: EntityCache[str, dict] = field(default_factory=lambda: EntityCache("profiles"))

    def intern_commit(self, commit: Commit) -> Commit:
        """Return the shared instance for *commit*, filling a cached stub in place."""
        return self.commits.intern(commit.hash, commit, merge=_fill)

    def commit_stub(self, sha: str) -> Commit:
        return self.commits.intern(sha, Commit(sha))

    def user(self, login: str) -> User:
        return self.users.intern(login, User(login))
