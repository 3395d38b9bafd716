"""User lookup and best-effort email guessing."""

from __future__ import annotations

from collections import Counter
from typing import Any

import structlog

from ghgraph.cache import RepositoryCache
from ghgraph.fetcher import GitHubFetcher
from ghgraph.models import User

log = structlog.get_logger("ghgraph.users")


class UserResolver:
    """Maps embedded user objects to the shared :class:`User` instances."""

    def __init__(self, fetcher: GitHubFetcher, cache: RepositoryCache) -> None:
        self._fetcher = fetcher
        self._cache = cache

    def from_record(self, raw: dict[str, Any] | None) -> User | None:
        """Return the cached user for an embedded user object; no request is made."""
        if not raw or not raw.get("login"):
            return None
        user = self._cache.user(raw["login"])
        if user.name is None and raw.get("name"):
            user.name = raw["name"]
        if raw.get("email") and (user.email is None or user.email_guessed):
            user.email = raw["email"]
            user.email_guessed = False
        return user

    async def enrich(self, user: User, *, guess_email: bool = False) -> User:
        """Fill name and public email from the profile, fetched once per login.

        With *guess_email*, a user without public email gets the guess of
        :meth:`guess_email`, flagged as ``email_guessed``.
        """
        login = user.login
        profile = await self._cache.profiles.lookup_or_insert(
            login, lambda: self._fetcher.fetch_one(f"/users/{login}"), wait=True
        )
        if profile:
            if user.name is None and profile.get("name"):
                user.name = profile["name"]
            if user.email is None and profile.get("email"):
                user.email = profile["email"]

        if guess_email and user.email is None:
            email = await self.guess_email(user)
            if email is not None:
                user.email = email
                user.email_guessed = True
        return user

    async def guess_email(self, user: User) -> str | None:
        """Most frequent author email of the user's recent pushes, or None.

        Only commits whose author name equals the user's login or display
        name count. The result is a guess, not verified in any way.
        """
        events = await self._fetcher.fetch(f"/users/{user.login}/events/public")
        if not events:
            return None

        names = {user.login.lower()}
        if user.name:
            names.add(user.name.lower())

        counts: Counter[str] = Counter()
        for event in events:
            if event.get("type") != "PushEvent":
                continue
            for commit in (event.get("payload") or {}).get("commits") or []:
                author = commit.get("author") or {}
                name = (author.get("name") or "").lower()
                if name in names and author.get("email"):
                    counts[author["email"]] += 1

        if not counts:
            log.debug("users.no_email_guess", login=user.login)
            return None
        return counts.most_common(1)[0][0]
