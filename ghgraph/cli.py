"""CLI entry point: ghgraph.

Subcommands:
    ghgraph dump owner/repo snapshot.json            # Resolve all issues and write a snapshot
    ghgraph dump owner/repo - --since 2024-01-01     # Incremental update, snapshot to stdout
    ghgraph pulls owner/repo --clone-dir ./clone     # List pull requests with merge targets
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import click
from dotenv import load_dotenv

from ghgraph.ancestry import GitAncestryOracle
from ghgraph.core.github import parse_repo_url
from ghgraph.core.logging import setup_logging
from ghgraph.core.settings import Settings
from ghgraph.exceptions import GraphError
from ghgraph.merge import IMPOSSIBLE_COMMIT
from ghgraph.models import Commit, State
from ghgraph.repository import GitHubRepository
from ghgraph.snapshot import dump_issues

_STATES = [s.name.lower() for s in State]


def _settings(tokens: tuple[str, ...], fail_fast: bool) -> Settings:
    settings = Settings.from_env()
    if tokens:
        settings = replace(settings, tokens=list(tokens))
    if fail_fast:
        settings = replace(settings, wait_on_exhaustion=False)
    return settings


def _parse_since(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        since = datetime.fromisoformat(value)
    except ValueError as e:
        raise click.BadParameter(f"not an ISO-8601 date: {value}") from e
    return since if since.tzinfo else since.replace(tzinfo=timezone.utc)


async def _oracle(repo_url: str, clone_dir: str | None) -> GitAncestryOracle | None:
    if clone_dir is None:
        return None
    owner, repo = parse_repo_url(repo_url)
    return await GitAncestryOracle.clone(f"https://github.com/{owner}/{repo}.git", clone_dir)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
def main(verbose: bool) -> None:
    """ghgraph: cross-referenced snapshots of GitHub issues, pull requests and commits."""
    load_dotenv()
    setup_logging("DEBUG" if verbose else None)


@main.command("dump")
@click.argument("repo_url")
@click.argument("output")
@click.option("--token", "tokens", multiple=True, help="API token (repeatable, overrides env)")
@click.option("--clone-dir", default=None, help="Local clone used for commit lookups")
@click.option("--snapshot", default=None, type=click.Path(), help="Earlier snapshot to start from")
@click.option("--since", default=None, help="Only update issues changed since this ISO date")
@click.option("--no-prs", is_flag=True, help="Leave pull requests out of the snapshot")
@click.option("--users", "enrich", is_flag=True, help="Fetch user profiles")
@click.option("--guess-emails", is_flag=True, help="Guess missing user emails")
@click.option("--fail-fast", is_flag=True, help="Do not wait for exhausted tokens to reset")
def dump(
    repo_url: str,
    output: str,
    tokens: tuple[str, ...],
    clone_dir: str | None,
    snapshot: str | None,
    since: str | None,
    no_prs: bool,
    enrich: bool,
    guess_emails: bool,
    fail_fast: bool,
) -> None:
    """Resolve the issues of REPO_URL and write a snapshot to OUTPUT ('-' for stdout)."""
    settings = _settings(tokens, fail_fast)
    guess_emails = guess_emails or settings.guess_emails
    updated_since = _parse_since(since)

    async def _run() -> bytes:
        oracle = await _oracle(repo_url, clone_dir)
        async with GitHubRepository.from_settings(repo_url, settings, oracle) as repository:
            if snapshot and Path(snapshot).exists():
                repository.load_snapshot(snapshot)
            issues = await repository.list_issues(
                include_pull_requests=not no_prs, since=updated_since
            )
            if enrich or guess_emails:
                await repository.enrich_users(guess_emails=guess_emails)
            return dump_issues(issues)

    try:
        data = asyncio.run(_run())
    except (GraphError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if output == "-":
        click.echo(data, nl=False)
    else:
        Path(output).write_bytes(data)
        click.echo(f"Snapshot written to {output}", err=True)


@main.command("pulls")
@click.argument("repo_url")
@click.option("--clone-dir", required=True, help="Local clone used for ancestry queries")
@click.option("--token", "tokens", multiple=True, help="API token (repeatable, overrides env)")
@click.option("--state", "state", type=click.Choice(_STATES), default="any", help="State filter")
@click.option(
    "--snapshot", default=None, type=click.Path(exists=True), help="Snapshot to start from"
)
@click.option("--merge/--no-merge", default=True, help="Show merge target and merge base")
@click.option("--fail-fast", is_flag=True, help="Do not wait for exhausted tokens to reset")
def pulls(
    repo_url: str,
    clone_dir: str,
    tokens: tuple[str, ...],
    state: str,
    snapshot: str | None,
    merge: bool,
    fail_fast: bool,
) -> None:
    """List the pull requests of REPO_URL with their merge targets."""
    settings = _settings(tokens, fail_fast)

    async def _run() -> list[str]:
        oracle = await _oracle(repo_url, clone_dir)
        lines = []
        async with GitHubRepository.from_settings(repo_url, settings, oracle) as repository:
            if snapshot:
                repository.load_snapshot(snapshot)
            for pr in await repository.list_pull_requests(State[state.upper()]):
                line = f"#{pr.number}\t{pr.pr_state.value}\t{pr.branch}"
                if merge:
                    target = await repository.merge_target(pr)
                    base = await repository.merge_base(pr)
                    line += f"\t{_short(target)}\t{_short(base)}"
                lines.append(line)
        return lines

    try:
        lines = asyncio.run(_run())
    except (GraphError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    for line in lines:
        click.echo(line)
    click.echo(f"{len(lines)} pull requests", err=True)


def _short(commit: Commit | None) -> str:
    if commit is None:
        return "-"
    if commit is IMPOSSIBLE_COMMIT:
        return "impossible"
    return commit.hash[:12]
