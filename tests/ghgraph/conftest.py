"""Shared fixtures for ghgraph tests."""

from __future__ import annotations

from typing import Any

import pytest
from fakes import API, FakeFetcher, FakeOracle

from ghgraph.cache import RepositoryCache
from ghgraph.resolver import GraphResolver
from ghgraph.users import UserResolver


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def make_resolver():
    """Factory: (responses, oracle) -> (resolver, fetcher, cache)."""

    def _make(responses: dict[str, Any], oracle: FakeOracle | None = None, delay: float = 0.0):
        fetcher = FakeFetcher(responses, delay=delay)
        cache = RepositoryCache()
        users = UserResolver(fetcher, cache)  # type: ignore[arg-type]
        resolver = GraphResolver(fetcher, cache, users, API, oracle)  # type: ignore[arg-type]
        return resolver, fetcher, cache

    return _make
