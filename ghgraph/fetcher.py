"""Async GitHub REST fetcher with pagination and credential rotation."""

from __future__ import annotations

import re
import time
from typing import Any

import httpx
import structlog

from ghgraph.core.settings import DEFAULT_API_URL
from ghgraph.credentials import Credential, CredentialPool
from ghgraph.exceptions import NoCredentialError

log = structlog.get_logger("ghgraph.fetcher")

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')

_DEFAULT_PER_PAGE = 100


class GitHubFetcher:
    """Fetches REST resources through a :class:`CredentialPool`.

    Every failure (transport error, unexpected status, malformed JSON,
    no credential available) is logged and reported as ``None``.
    """

    def __init__(
        self,
        pool: CredentialPool,
        *,
        api_url: str = DEFAULT_API_URL,
        per_page: int = _DEFAULT_PER_PAGE,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._pool = pool
        self._per_page = per_page
        self._client = httpx.AsyncClient(
            base_url=api_url,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubFetcher:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── public ─────────────────────────────────────────────────────────────

    async def fetch(
        self, path: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]] | None:
        """Fetch all pages of a collection and concatenate them in order.

        Follows ``Link: <...>; rel="next"`` headers. Pages are requested one
        after another; a credential that runs out between pages is swapped
        for a fresh one without losing the pages fetched so far.
        """
        params = dict(params or {})
        params.setdefault("per_page", self._per_page)

        pages = await self._fetch_pages(path, params, follow=True)
        if pages is None:
            return None
        items: list[dict[str, Any]] = []
        for data in pages:
            if isinstance(data, list):
                items.extend(data)
            else:
                items.append(data)
        return items

    async def fetch_one(
        self, path: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Fetch a single resource such as one issue or one commit."""
        pages = await self._fetch_pages(path, params, follow=False)
        if not pages:
            return None
        data = pages[0]
        if not isinstance(data, dict):
            log.warning("fetcher.unexpected_payload", path=path, payload_type=type(data).__name__)
            return None
        return data

    # ── internal ───────────────────────────────────────────────────────────

    async def _fetch_pages(
        self, path: str, params: dict[str, Any] | None, *, follow: bool
    ) -> list[Any] | None:
        try:
            credential = await self._pool.acquire()
        except NoCredentialError as exc:
            log.warning("fetcher.no_credential", path=path, error=str(exc))
            return None

        pages: list[Any] = []
        url: str | None = path
        try:
            while url:
                response, credential = await self._get(url, params, credential)
                if response is None:
                    return None
                try:
                    pages.append(response.json())
                except ValueError as exc:
                    log.warning("fetcher.malformed_json", url=url, error=str(exc))
                    return None

                url = _parse_next_link(response.headers.get("Link", "")) if follow else None
                # the next link already carries the query string
                params = None
            return pages
        finally:
            await self._pool.release(credential)

    async def _get(
        self, url: str, params: dict[str, Any] | None, credential: Credential
    ) -> tuple[httpx.Response | None, Credential]:
        """GET *url*, retrying a rate-limited request once with a rotated credential."""
        retried = False
        while True:
            if not credential.usable():
                try:
                    credential = await self._rotate(credential)
                except NoCredentialError as exc:
                    log.warning("fetcher.no_credential", url=url, error=str(exc))
                    return None, credential

            try:
                response = await self._client.get(url, params=params, headers=credential.headers)
            except httpx.HTTPError as exc:
                log.warning("fetcher.transport_error", url=url, error=str(exc))
                return None, credential

            credential.update(
                _parse_header_int(response.headers.get("X-RateLimit-Remaining")),
                _parse_header_int(response.headers.get("X-RateLimit-Reset")),
            )

            if response.is_success:
                return response, credential

            if response.status_code in (403, 429) and _is_rate_limited(response) and not retried:
                now = credential.now()
                wait = _get_rate_limit_wait(response, now)
                log.warning(
                    "fetcher.rate_limited",
                    url=url,
                    status=response.status_code,
                    wait_seconds=wait,
                    credential=repr(credential),
                )
                credential.exhaust(now + wait)
                retried = True
                continue

            log.warning("fetcher.request_failed", url=url, status=response.status_code)
            return None, credential

    async def _rotate(self, credential: Credential) -> Credential:
        """Swap *credential* for a usable one; the old hold is kept until then."""
        fresh = await self._pool.acquire()
        await self._pool.release(credential)
        log.debug("fetcher.rotated", old=repr(credential), new=repr(fresh))
        return fresh


def _is_rate_limited(response: httpx.Response) -> bool:
    """Check if a 403/429 response is due to rate limiting."""
    remaining = _parse_header_int(response.headers.get("X-RateLimit-Remaining"))
    if remaining is not None:
        return remaining == 0
    # GitHub also uses Retry-After for secondary rate limits
    return "Retry-After" in response.headers


def _get_rate_limit_wait(response: httpx.Response, now: float | None = None) -> int:
    """Seconds until the quota of the rejected credential is back."""
    retry_after = _parse_header_int(response.headers.get("Retry-After"))
    if retry_after is not None:
        return max(retry_after, 1)
    reset_ts = _parse_header_int(response.headers.get("X-RateLimit-Reset"))
    if reset_ts is not None:
        now = time.time() if now is None else now
        return max(reset_ts - int(now), 1)
    return 60


def _parse_header_int(value: str | None) -> int | None:
    """Safely parse an integer header value."""
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def _parse_next_link(link_header: str) -> str | None:
    """Extract the ``next`` URL from a GitHub ``Link`` header."""
    match = _NEXT_LINK_RE.search(link_header)
    return match.group(1) if match else None
