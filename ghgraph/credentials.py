"""API credentials and the pool that multiplexes them across tasks.

A credential is held by at most one asyncio task at a time. Holding is
reentrant for the holding task and counted, so nested acquisitions must be
matched by the same number of releases.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
import time
from collections.abc import AsyncIterator, Callable, Iterable

import structlog

from ghgraph.exceptions import NoCredentialError

log = structlog.get_logger("ghgraph.credentials")

Clock = Callable[[], float]

_UNLIMITED = sys.maxsize

# Re-check interval when valid credentials exist but all are held.
_BUSY_RETRY = 10.0


class Credential:
    """One API token plus its quota state.

    ``remaining`` never increases inside one quota window; only a response
    that reports a later reset time starts a new window.
    """

    def __init__(
        self,
        secret: str,
        remaining: int = _UNLIMITED,
        reset_at: float | None = None,
        *,
        clock: Clock = time.time,
    ) -> None:
        self.secret = secret
        self.remaining = remaining
        self.reset_at = clock() if reset_at is None else reset_at
        self.holder: asyncio.Task | None = None
        self.holds = 0
        self._clock = clock

    def __repr__(self) -> str:
        masked = f"{self.secret[:4]}..." if self.secret else "<anonymous>"
        return f"Credential({masked}, remaining={self.remaining}, reset_at={self.reset_at})"

    def now(self) -> float:
        """Current time on the clock the quota window is measured with."""
        return self._clock()

    @property
    def valid(self) -> bool:
        # keep one call in reserve
        return self.remaining > 1 or self.now() >= self.reset_at

    def usable(self, task: asyncio.Task | None = None) -> bool:
        """Valid and either unheld or held by *task* (default: the current task)."""
        task = task or asyncio.current_task()
        return self.valid and (self.holder is None or self.holder is task)

    def update(self, remaining: int | None, reset_at: float | None) -> None:
        """Apply the quota reported by one response."""
        if remaining is None:
            return
        if reset_at is None or reset_at == self.reset_at:
            self.remaining = min(self.remaining, remaining)
        elif reset_at > self.reset_at:
            self.remaining = remaining
            self.reset_at = reset_at
        # reset_at in the past: stale response from an older window, ignore

    def exhaust(self, until: float) -> None:
        """Mark the quota as used up until *until*, after a rate-limited response."""
        self.remaining = 0
        self.reset_at = until

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"token {self.secret}"} if self.secret else {}


class CredentialPool:
    """Hands out credentials to tasks, blocking while all are exhausted or held."""

    def __init__(
        self,
        credentials: Iterable[Credential | str],
        *,
        wait_on_exhaustion: bool = True,
        clock: Clock = time.time,
    ) -> None:
        self._credentials = [
            c if isinstance(c, Credential) else Credential(c, clock=clock) for c in credentials
        ]
        if not self._credentials:
            raise ValueError("a credential pool needs at least one credential")
        self._wait_on_exhaustion = wait_on_exhaustion
        self._clock = clock
        self._condition = asyncio.Condition()

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials)

    async def acquire(self) -> Credential:
        """Return a credential held by the calling task.

        The hold belongs to the task that awaits this coroutine. Bound the
        wait with ``asyncio.timeout``; ``asyncio.wait_for`` runs it in a task
        of its own on Python 3.11, which would then own the hold.

        Raises :class:`NoCredentialError` when none is usable and waiting
        is disabled. Cancellation while waiting propagates to the caller.
        """
        task = asyncio.current_task()
        async with self._condition:
            while True:
                credential = self._select(task)
                if credential is not None:
                    credential.holder = task
                    credential.holds += 1
                    return credential

                if not self._wait_on_exhaustion:
                    raise NoCredentialError(f"all {len(self)} credentials are exhausted or held")

                timeout = max(self.reset_time() - self._clock(), 0.0)
                log.info("credentials.waiting", wait_seconds=round(timeout, 1), pool_size=len(self))
                try:
                    async with asyncio.timeout(timeout):
                        await self._condition.wait()
                except TimeoutError:
                    pass

    async def release(self, credential: Credential) -> None:
        """Give up one hold on *credential*, waking one waiter once it is free."""
        async with self._condition:
            if credential.holder is not asyncio.current_task() or credential.holds == 0:
                raise RuntimeError(f"{credential!r} is not held by the calling task")
            credential.holds -= 1
            if credential.holds == 0:
                credential.holder = None
                self._condition.notify(1)

    @contextlib.asynccontextmanager
    async def credential(self) -> AsyncIterator[Credential]:
        credential = await self.acquire()
        try:
            yield credential
        finally:
            await self.release(credential)

    def reset_time(self) -> float:
        """Earliest time at which :meth:`acquire` may succeed."""
        now = self._clock()
        task = asyncio.current_task()
        if any(c.usable(task) for c in self._credentials):
            return now
        if any(c.valid for c in self._credentials):
            return now + _BUSY_RETRY
        return min(c.reset_at for c in self._credentials)

    def _select(self, task: asyncio.Task | None) -> Credential | None:
        for credential in self._credentials:
            if credential.holder is task and credential.valid:
                return credential
        for credential in self._credentials:
            if credential.holder is None and credential.valid:
                return credential
        return None
