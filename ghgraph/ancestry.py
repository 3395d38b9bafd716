"""Commit ancestry queries against a local clone."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog

from ghgraph.exceptions import GitError
from ghgraph.models import Commit, Signature, parse_datetime

log = structlog.get_logger("ghgraph.ancestry")

# hash, parents, author name/email/date, committer name/email/date, message
_FORMAT = "%x1e%H%x00%P%x00%an%x00%ae%x00%aI%x00%cn%x00%ce%x00%cI%x00%B"
_FIELDS = 9


@runtime_checkable
class AncestryOracle(Protocol):
    """Interface of the local version history used for merge computations."""

    async def commit(self, ref: str) -> Commit | None: ...

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool: ...

    async def parents(self, sha: str) -> list[Commit]: ...

    async def commits_before(self, date: datetime, branch: str) -> list[Commit]: ...

    async def merge_base(self, a: str, b: str) -> Commit | None: ...

    async def branch_tip(self, name: str) -> Commit | None: ...

    async def fetch_remote(self, name: str, url: str) -> bool: ...


class GitAncestryOracle:
    """:class:`AncestryOracle` backed by the ``git`` executable."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @classmethod
    async def clone(cls, repo_url: str, directory: str | Path) -> GitAncestryOracle:
        """Clone *repo_url* into *directory*, or update an existing clone there.

        The full history is kept so that any ref can be resolved.
        Raises :class:`GitError` if git fails.
        """
        directory = Path(directory)
        if (directory / ".git").exists():
            log.info("git.update", path=str(directory))
            await _run(["git", "-C", str(directory), "fetch", "--prune", "origin"])
        else:
            log.info("git.clone", url=repo_url, path=str(directory))
            await _run(["git", "clone", "--", repo_url, str(directory)])
        return cls(directory)

    # ── queries ────────────────────────────────────────────────────────────

    async def commit(self, ref: str) -> Commit | None:
        code, out = await self._git(
            "show", "-s", f"--format={_FORMAT}", "--end-of-options", f"{ref}^{{commit}}"
        )
        if code != 0:
            return None
        commits = _parse_log(out)
        return commits[0] if commits else None

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        code, _ = await self._git("merge-base", "--is-ancestor", ancestor, descendant)
        return code == 0

    async def parents(self, sha: str) -> list[Commit]:
        commit = await self.commit(sha)
        if commit is None:
            return []
        parents = await asyncio.gather(*(self.commit(p) for p in commit.parents))
        return [p for p in parents if p is not None]

    async def commits_before(self, date: datetime, branch: str) -> list[Commit]:
        """Commits reachable from *branch* up to *date*, newest first."""
        code, out = await self._git(
            "log", f"--before={date.isoformat()}", f"--format={_FORMAT}", "--end-of-options", branch
        )
        if code != 0:
            return []
        return _parse_log(out)

    async def merge_base(self, a: str, b: str) -> Commit | None:
        code, out = await self._git("merge-base", "--end-of-options", a, b)
        if code != 0 or not out.strip():
            return None
        return await self.commit(out.split()[0])

    async def branch_tip(self, name: str) -> Commit | None:
        return await self.commit(name)

    async def fetch_remote(self, name: str, url: str) -> bool:
        """Add *url* as remote *name* (if missing) and fetch it."""
        code, _ = await self._git("remote", "get-url", name)
        if code != 0:
            code, _ = await self._git("remote", "add", name, url)
            if code != 0:
                return False
        code, _ = await self._git("fetch", "--quiet", name)
        if code != 0:
            log.info("git.fetch_remote_failed", remote=name, url=url)
        return code == 0

    async def _git(self, *args: str) -> tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            "git",
            "-C",
            str(self.path),
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await proc.communicate()
        return proc.returncode, stdout.decode(errors="replace")


def _parse_log(out: str) -> list[Commit]:
    commits = []
    for record in out.split("\x1e"):
        fields = record.split("\x00")
        if len(fields) < _FIELDS:
            continue
        sha, parents, an, ae, ad, cn, ce, cd, message = fields[:_FIELDS]
        commits.append(
            Commit(
                hash=sha.strip(),
                author=Signature(name=an, email=ae, date=parse_datetime(ad)),
                committer=Signature(name=cn, email=ce, date=parse_datetime(cd)),
                message=message.rstrip("\n"),
                parents=parents.split(),
                in_git=True,
            )
        )
    return commits


async def _run(cmd: list[str]) -> None:
    """Run a git command, raising GitError on failure."""
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise GitError(
            f"git command failed (exit {proc.returncode}): {stderr.decode().strip()}"
        )
