"""Decoding of issue events into their typed variants."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from ghgraph.models import (
    AssignedEvent,
    DefaultEvent,
    Event,
    LabeledEvent,
    ReferencedEvent,
    ReviewDismissedEvent,
    ReviewRequestedEvent,
    User,
    parse_datetime,
)

UserFactory = Callable[[dict[str, Any] | None], User | None]


def _default(raw: dict[str, Any], base: dict[str, Any], users: UserFactory) -> Event:
    return DefaultEvent(**base)


def _labeled(raw: dict[str, Any], base: dict[str, Any], users: UserFactory) -> Event:
    label = raw.get("label") or {}
    return LabeledEvent(
        **base,
        label=label.get("name", ""),
        color=label.get("color"),
        description=label.get("description"),
        added=raw.get("event") == "labeled",
    )


def _referenced(raw: dict[str, Any], base: dict[str, Any], users: UserFactory) -> Event:
    return ReferencedEvent(**base, commit_id=raw.get("commit_id"))


def _review_requested(raw: dict[str, Any], base: dict[str, Any], users: UserFactory) -> Event:
    return ReviewRequestedEvent(**base, reviewer=users(raw.get("requested_reviewer")))


def _review_dismissed(raw: dict[str, Any], base: dict[str, Any], users: UserFactory) -> Event:
    review = raw.get("dismissed_review") or {}
    return ReviewDismissedEvent(
        **base,
        review_id=review.get("review_id"),
        state=review.get("state"),
        dismissal_message=review.get("dismissal_message"),
        dismissal_commit_id=review.get("dismissal_commit_id"),
    )


def _assigned(raw: dict[str, Any], base: dict[str, Any], users: UserFactory) -> Event:
    return AssignedEvent(**base, assigner=users(raw.get("assigner")))


EVENT_TYPES: dict[str, type[Event]] = {
    "labeled": LabeledEvent,
    "unlabeled": LabeledEvent,
    "referenced": ReferencedEvent,
    "merged": ReferencedEvent,
    "closed": ReferencedEvent,
    "review_requested": ReviewRequestedEvent,
    "review_request_removed": ReviewRequestedEvent,
    "review_dismissed": ReviewDismissedEvent,
    "assigned": AssignedEvent,
    "unassigned": AssignedEvent,
}

_DECODERS: dict[type[Event], Callable[[dict[str, Any], dict[str, Any], UserFactory], Event]] = {
    DefaultEvent: _default,
    LabeledEvent: _labeled,
    ReferencedEvent: _referenced,
    ReviewRequestedEvent: _review_requested,
    ReviewDismissedEvent: _review_dismissed,
    AssignedEvent: _assigned,
}


def event_class(name: str) -> type[Event]:
    """The variant used for event *name*; unknown names map to :class:`DefaultEvent`."""
    return EVENT_TYPES.get(name, DefaultEvent)


def parse_event(raw: dict[str, Any], users: UserFactory) -> Event:
    """Build the event variant for one raw ``/issues/{n}/events`` record.

    *users* maps an embedded user object to the cache-resident :class:`User`.
    """
    name = raw.get("event") or ""
    base = {
        "event": name,
        "user": users(raw.get("actor")),
        "created_at": parse_datetime(raw.get("created_at")),
    }
    return _DECODERS[event_class(name)](raw, base, users)
