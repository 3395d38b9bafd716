"""On-disk snapshot of resolved issues.

The snapshot is a JSON array of issue records ordered by creation time.
Loading it seeds a :class:`RepositoryCache`, so an incremental update only
fetches what changed since.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from ghgraph.cache import RepositoryCache
from ghgraph.events import event_class
from ghgraph.exceptions import SnapshotError
from ghgraph.models import (
    AssignedEvent,
    Commit,
    Event,
    Issue,
    PullRequest,
    ReferencedEvent,
    ReferencedLink,
    RefInfo,
    ReviewRequestedEvent,
    Signature,
    State,
    User,
)

log = structlog.get_logger("ghgraph.snapshot")


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class UserRecord(_Record):
    login: str
    name: str | None = None
    email: str | None = None
    email_guessed: bool = False


class SignatureRecord(_Record):
    name: str | None = None
    email: str | None = None
    date: datetime | None = None
    login: str | None = None


class CommitRecord(_Record):
    hash: str
    author: SignatureRecord | None = None
    committer: SignatureRecord | None = None
    message: str | None = None
    parents: list[str] = []
    in_git: bool = False


class CommentRecord(_Record):
    target: str
    user: UserRecord | None = None
    referenced_at: datetime | None = None


class CommitLinkRecord(_Record):
    target: CommitRecord
    user: UserRecord | None = None
    referenced_at: datetime | None = None


class IssueLinkRecord(_Record):
    target: int
    user: UserRecord | None = None
    referenced_at: datetime | None = None


class EventRecord(_Record):
    """All event variants in one record; fields a variant lacks stay unset."""

    event: str
    user: UserRecord | None = None
    created_at: datetime | None = None
    label: str | None = None
    color: str | None = None
    description: str | None = None
    added: bool | None = None
    commit_id: str | None = None
    reviewer: UserRecord | None = None
    review_id: int | None = None
    state: str | None = None
    dismissal_message: str | None = None
    dismissal_commit_id: str | None = None
    assigner: UserRecord | None = None


class RefRecord(_Record):
    ref: str
    sha: str
    repo: str | None = None
    clone_url: str | None = None


class IssueRecord(_Record):
    number: int
    title: str = ""
    body: str = ""
    user: UserRecord | None = None
    created_at: datetime | None = None
    closed_at: datetime | None = None
    state: State = State.OPEN
    url: str | None = None
    is_pull_request: bool = False
    comments: list[CommentRecord] = []
    events: list[EventRecord] = []
    related_commits: list[CommitLinkRecord] = []
    related_issues: list[IssueLinkRecord] = []
    # pull requests only
    head: RefRecord | None = None
    base: RefRecord | None = None
    merged_at: datetime | None = None
    branch: str | None = None
    commits: list[str] = []


_ISSUES = TypeAdapter(list[IssueRecord])

_MIN_TIME = datetime.min.replace(tzinfo=timezone.utc)

# plain event fields copied as they are
_EVENT_SCALARS = {
    "label",
    "color",
    "description",
    "added",
    "commit_id",
    "review_id",
    "state",
    "dismissal_message",
    "dismissal_commit_id",
}


# ── dump ──────────────────────────────────────────────────────────────────


def dump_issues(issues: Iterable[Issue]) -> bytes:
    """Serialize frozen issues to JSON, ordered by creation time and number."""
    ordered = sorted(issues, key=lambda i: (i.created_at or _MIN_TIME, i.number))
    records = [IssueRecord.model_validate(issue) for issue in ordered]
    return _ISSUES.dump_json(records, by_alias=True, indent=2, exclude_none=True)


def write_snapshot(path: str | Path, issues: Iterable[Issue]) -> int:
    """Write *issues* to *path*; returns the number of issues written."""
    issues = list(issues)
    Path(path).write_bytes(dump_issues(issues))
    log.info("snapshot.written", path=str(path), issues=len(issues))
    return len(issues)


# ── load ──────────────────────────────────────────────────────────────────


def read_snapshot(path: str | Path) -> list[IssueRecord]:
    """Parse a snapshot file. Raises :class:`SnapshotError` if it is unusable."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise SnapshotError(f"cannot read snapshot {path}: {exc}") from exc
    try:
        return _ISSUES.validate_json(data)
    except ValidationError as exc:
        raise SnapshotError(f"invalid snapshot {path}: {exc.error_count()} errors") from exc


def restore(records: Iterable[IssueRecord], cache: RepositoryCache) -> list[Issue]:
    """Rebuild frozen issues from *records* and seed them into *cache*.

    Users and commits are interned, so they are shared with anything that
    is resolved later.
    """
    issues = [_restore_issue(record, cache) for record in records]
    for issue in issues:
        cache.issues.seed(issue.number, issue)
    log.info("snapshot.restored", issues=len(issues), commits=len(cache.commits))
    return issues


def _restore_issue(record: IssueRecord, cache: RepositoryCache) -> Issue:
    common: dict[str, Any] = {
        "number": record.number,
        "title": record.title,
        "body": record.body,
        "user": _user(record.user, cache),
        "created_at": record.created_at,
        "closed_at": record.closed_at,
        "state": record.state,
        "url": record.url,
    }
    if record.is_pull_request:
        issue: Issue = PullRequest(
            **common,
            head=_ref(record.head),
            base=_ref(record.base),
            merged_at=record.merged_at,
            branch=record.branch,
            commits=list(record.commits),
        )
    else:
        issue = Issue(**common)

    issue.comments = [
        ReferencedLink(c.target, _user(c.user, cache), c.referenced_at) for c in record.comments
    ]
    issue.related_commits = [
        ReferencedLink(_commit(c.target, cache), _user(c.user, cache), c.referenced_at)
        for c in record.related_commits
    ]
    issue.related_issues = [
        ReferencedLink(i.target, _user(i.user, cache), i.referenced_at)
        for i in record.related_issues
    ]
    issue.events = [_event(e, cache) for e in record.events]
    issue.freeze()
    return issue


def _user(record: UserRecord | None, cache: RepositoryCache) -> User | None:
    if record is None:
        return None
    user = cache.user(record.login)
    if user.name is None:
        user.name = record.name
    if user.email is None and record.email:
        user.email = record.email
        user.email_guessed = record.email_guessed
    return user


def _signature(record: SignatureRecord | None) -> Signature | None:
    return Signature(**record.model_dump()) if record is not None else None


def _commit(record: CommitRecord, cache: RepositoryCache) -> Commit:
    return cache.intern_commit(
        Commit(
            hash=record.hash,
            author=_signature(record.author),
            committer=_signature(record.committer),
            message=record.message,
            parents=list(record.parents),
            in_git=record.in_git,
        )
    )


def _ref(record: RefRecord | None) -> RefInfo | None:
    return RefInfo(**record.model_dump()) if record is not None else None


def _event(record: EventRecord, cache: RepositoryCache) -> Event:
    cls = event_class(record.event)
    kwargs: dict[str, Any] = {
        "event": record.event,
        "user": _user(record.user, cache),
        "created_at": record.created_at,
    }
    for f in fields(cls):
        value = getattr(record, f.name, None)
        if f.name in _EVENT_SCALARS and value is not None:
            kwargs[f.name] = value

    if cls is ReferencedEvent and record.commit_id:
        kwargs["commit"] = cache.commits.get(record.commit_id) or cache.commit_stub(
            record.commit_id
        )
    elif cls is ReviewRequestedEvent:
        kwargs["reviewer"] = _user(record.reviewer, cache)
    elif cls is AssignedEvent:
        kwargs["assigner"] = _user(record.assigner, cache)
    return cls(**kwargs)
