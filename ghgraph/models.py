"""Data model of the issue / commit / user graph.

Every entity is owned by the :class:`~ghgraph.cache.RepositoryCache` of one
repository; holders share the cache-resident instance instead of copies, so
filling a commit stub is visible everywhere it is referenced.
"""

from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Generic, TypeVar

from ghgraph.exceptions import FrozenIssueError

T = TypeVar("T")

# Sort key for missing timestamps: they go first.
_MIN_TIME = datetime.min.replace(tzinfo=timezone.utc)


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 datetime string, returning None on failure."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None


class State(enum.Enum):
    """States of issues and pull requests, plus the filter-only values."""

    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"
    DECLINED = "declined"
    UNMERGED = "unmerged"
    ANY = "any"

    @classmethod
    def from_string(cls, value: str | None) -> State:
        """Map the GitHub ``state`` string; unknown values become ANY."""
        try:
            return cls(value.lower())  # type: ignore[union-attr]
        except (ValueError, AttributeError):
            return cls.ANY

    @classmethod
    def for_pull_request(cls, state: State, merged: bool) -> State:
        """Split CLOSED into MERGED and DECLINED."""
        if state is cls.CLOSED:
            return cls.MERGED if merged else cls.DECLINED
        return state

    def matches(self, state: State) -> bool:
        """Filter check: is *state* included when filtering by this value?

        ANY includes everything, CLOSED includes MERGED and DECLINED,
        UNMERGED includes OPEN and DECLINED.
        """
        if self is State.ANY or self is state:
            return True
        if self is State.CLOSED:
            return state in (State.MERGED, State.DECLINED)
        if self is State.UNMERGED:
            return state in (State.OPEN, State.DECLINED)
        return False


@dataclass(eq=False)
class User:
    """A GitHub account. The email may be a best-effort guess."""

    login: str
    name: str | None = None
    email: str | None = None
    email_guessed: bool = False

    def __eq__(self, other: object) -> bool:
        return isinstance(other, User) and other.login == self.login

    def __hash__(self) -> int:
        return hash(self.login)


@dataclass
class Signature:
    """Author or committer line of a commit."""

    name: str | None = None
    email: str | None = None
    date: datetime | None = None
    login: str | None = None


@dataclass(eq=False)
class Commit:
    """A commit, possibly a stub that only knows its hash."""

    hash: str
    author: Signature | None = None
    committer: Signature | None = None
    message: str | None = None
    parents: list[str] = field(default_factory=list)
    in_git: bool = False

    @property
    def is_stub(self) -> bool:
        return self.author is None and self.committer is None and self.message is None

    @property
    def author_time(self) -> datetime | None:
        return self.author.date if self.author is not None else None

    @property
    def committer_time(self) -> datetime | None:
        return self.committer.date if self.committer is not None else None

    def fill(self, other: Commit) -> None:
        """Fill this instance in place with whatever *other* knows."""
        if other.author is not None:
            self.author = other.author
        if other.committer is not None:
            self.committer = other.committer
        if other.message is not None:
            self.message = other.message
        if other.parents:
            self.parents = list(other.parents)
        self.in_git = self.in_git or other.in_git

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Commit) and other.hash == self.hash

    def __hash__(self) -> int:
        return hash(self.hash)


@dataclass
class ReferencedLink(Generic[T]):
    """Something (comment text, issue number, commit) referenced by a user at a time."""

    target: T
    user: User | None = None
    referenced_at: datetime | None = None


# ── events ────────────────────────────────────────────────────────────────


@dataclass
class Event:
    """Common part of all issue events; ``event`` is the GitHub event name."""

    event: str
    user: User | None = None
    created_at: datetime | None = None


@dataclass
class DefaultEvent(Event):
    pass


@dataclass
class LabeledEvent(Event):
    label: str = ""
    color: str | None = None
    description: str | None = None
    added: bool = True


@dataclass
class ReferencedEvent(Event):
    """``referenced``, ``merged`` and ``closed`` events pointing at a commit."""

    commit_id: str | None = None
    commit: Commit | None = None


@dataclass
class ReviewRequestedEvent(Event):
    reviewer: User | None = None


@dataclass
class ReviewDismissedEvent(Event):
    review_id: int | None = None
    state: str | None = None
    dismissal_message: str | None = None
    dismissal_commit_id: str | None = None


@dataclass
class AssignedEvent(Event):
    assigner: User | None = None


# ── issues ────────────────────────────────────────────────────────────────


@dataclass
class RefInfo:
    """Head or base of a pull request."""

    ref: str
    sha: str
    repo: str | None = None  # full name of the fork, None if it was deleted
    clone_url: str | None = None


def _link_time(link: ReferencedLink[Any]) -> datetime:
    return link.referenced_at or _MIN_TIME


def _event_time(event: Event) -> datetime:
    return event.created_at or _MIN_TIME


@dataclass(eq=False)
class Issue:
    """An issue, mutable while it is populated and immutable once frozen."""

    number: int
    title: str = ""
    body: str = ""
    user: User | None = None
    created_at: datetime | None = None
    closed_at: datetime | None = None
    state: State = State.OPEN
    url: str | None = None
    comments: Sequence[ReferencedLink[str]] = field(default_factory=list)
    events: Sequence[Event] = field(default_factory=list)
    related_commits: Sequence[ReferencedLink[Commit]] = field(default_factory=list)
    related_issues: Sequence[ReferencedLink[int]] = field(default_factory=list)

    is_pull_request: ClassVar[bool] = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "_frozen", False)

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_frozen", False):
            raise FrozenIssueError(self.number, name)
        super().__setattr__(name, value)

    @property
    def frozen(self) -> bool:
        return self.__dict__.get("_frozen", False)

    def freeze(self) -> None:
        """Sort and de-duplicate all lists once and lock the issue.

        Related commits without an author time are dropped, duplicates keep
        their earliest reference. Calling this again is a no-op.
        """
        if self.frozen:
            return

        self.comments = tuple(sorted(self.comments, key=_link_time))
        self.events = tuple(sorted(self.events, key=_event_time))

        commits: dict[str, ReferencedLink[Commit]] = {}
        for link in sorted(self.related_commits, key=_link_time):
            commits.setdefault(link.target.hash, link)
        self.related_commits = tuple(
            sorted(
                (link for link in commits.values() if link.target.author_time is not None),
                key=lambda link: link.target.author_time,
            )
        )

        issues: dict[int, ReferencedLink[int]] = {}
        for link in sorted(self.related_issues, key=_link_time):
            issues.setdefault(link.target, link)
        self.related_issues = tuple(issues.values())

        self._freeze_extra()
        object.__setattr__(self, "_frozen", True)

    def _freeze_extra(self) -> None:
        pass


@dataclass(eq=False)
class PullRequest(Issue):
    """An issue that is a pull request."""

    head: RefInfo | None = None
    base: RefInfo | None = None
    merged_at: datetime | None = None
    branch: str | None = None
    commits: Sequence[str] = field(default_factory=list)

    is_pull_request: ClassVar[bool] = True

    @property
    def pr_state(self) -> State:
        return State.for_pull_request(self.state, self.merged_at is not None)

    def _freeze_extra(self) -> None:
        self.commits = tuple(dict.fromkeys(self.commits))
