"""Tests for the entity cache and its in-progress guard."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from ghgraph.cache import RECURSION, EntityCache, RepositoryCache
from ghgraph.models import Commit, Signature


class TestEntityCache:
    @pytest.mark.anyio
    async def test_producer_runs_once(self):
        cache: EntityCache[int, str] = EntityCache("test")
        calls = []

        async def produce():
            calls.append(1)
            return "value"

        assert await cache.lookup_or_insert(1, produce) == "value"
        assert await cache.lookup_or_insert(1, produce) == "value"
        assert calls == [1]
        assert 1 in cache
        assert len(cache) == 1

    @pytest.mark.anyio
    async def test_miss_is_remembered(self):
        cache: EntityCache[int, str] = EntityCache("test")
        calls = []

        async def produce():
            calls.append(1)
            return None

        assert await cache.lookup_or_insert(1, produce) is None
        assert await cache.lookup_or_insert(1, produce) is None
        assert calls == [1]
        assert cache.is_miss(1)
        assert 1 not in cache

    @pytest.mark.anyio
    async def test_reentrant_lookup_gets_recursion(self):
        cache: EntityCache[int, str] = EntityCache("test")
        inner = []

        async def produce():
            inner.append(await cache.lookup_or_insert(1, produce))
            return "outer"

        assert await cache.lookup_or_insert(1, produce) == "outer"
        assert inner == [RECURSION]
        assert not RECURSION

    @pytest.mark.anyio
    async def test_concurrent_waiters_share_result(self):
        cache: EntityCache[str, int] = EntityCache("test")
        calls = []

        async def produce():
            calls.append(1)
            await asyncio.sleep(0.01)
            return 42

        results = await asyncio.gather(
            *(cache.lookup_or_insert("k", produce, wait=True) for _ in range(5))
        )
        assert results == [42] * 5
        assert calls == [1]

    @pytest.mark.anyio
    async def test_concurrent_lookup_without_wait_gets_recursion(self):
        cache: EntityCache[str, int] = EntityCache("test")

        async def produce():
            await asyncio.sleep(0.01)
            return 1

        first, second = await asyncio.gather(
            cache.lookup_or_insert("k", produce), cache.lookup_or_insert("k", produce)
        )
        assert first == 1
        assert second is RECURSION
        assert await cache.wait("k") == 1

    @pytest.mark.anyio
    async def test_failing_producer_caches_nothing(self):
        cache: EntityCache[str, int] = EntityCache("test")

        async def fail():
            await asyncio.sleep(0.01)
            raise RuntimeError("boom")

        async def produce():
            return 7

        results = await asyncio.gather(
            cache.lookup_or_insert("k", fail),
            cache.lookup_or_insert("k", produce, wait=True),
            return_exceptions=True,
        )
        assert isinstance(results[0], RuntimeError)
        assert results[1] is None
        assert not cache.is_working("k")
        assert not cache.is_miss("k")
        assert await cache.lookup_or_insert("k", produce) == 7

    @pytest.mark.anyio
    async def test_placeholder_visible_while_working(self):
        cache: EntityCache[int, list] = EntityCache("test")
        placeholder: list = []
        seen = []

        async def produce():
            cache.provide(1, placeholder)
            seen.append(cache.get(1))
            await asyncio.sleep(0)
            placeholder.append("done")
            return placeholder

        assert await cache.lookup_or_insert(1, produce) is placeholder
        assert seen == [placeholder]
        assert cache.get(1) is placeholder

    def test_provide_requires_running_producer(self):
        cache: EntityCache[int, str] = EntityCache("test")
        with pytest.raises(KeyError):
            cache.provide(1, "x")

    @pytest.mark.anyio
    async def test_wait_without_producer_returns_entry(self):
        cache: EntityCache[int, str] = EntityCache("test")
        assert await cache.wait(1) is None
        cache.seed(1, "x")
        assert await cache.wait(1) == "x"

    def test_intern_returns_resident_instance(self):
        cache: EntityCache[str, list] = EntityCache("test")
        first, second = ["a"], ["b"]
        merged = []
        assert cache.intern("k", first) is first
        assert cache.intern("k", second, merge=lambda old, new: merged.append(new)) is first
        assert merged == [second]

    @pytest.mark.anyio
    async def test_seed_and_evict(self):
        cache: EntityCache[int, str] = EntityCache("test")

        async def missing():
            return None

        await cache.lookup_or_insert(1, missing)
        cache.seed(1, "x")
        assert not cache.is_miss(1)
        assert cache.get(1) == "x"
        cache.evict(1)
        assert cache.get(1) is None
        assert list(cache) == []


class TestRepositoryCache:
    def test_intern_commit_fills_stub_in_place(self):
        cache = RepositoryCache()
        stub = cache.commit_stub("a" * 40)
        assert stub.is_stub

        sig = Signature(name="Bob", date=datetime(2024, 1, 5, tzinfo=timezone.utc))
        full = Commit("a" * 40, author=sig, committer=sig, message="fix", parents=["b" * 40])
        assert cache.intern_commit(full) is stub
        assert not stub.is_stub
        assert stub.message == "fix"
        assert stub.parents == ["b" * 40]

    def test_user_is_shared(self):
        cache = RepositoryCache()
        assert cache.user("alice") is cache.user("alice")
        assert len(cache.users) == 1
