"""Tests for the cookie-backed token store and the bearer token cache."""

import asyncio
import threading

import pytest

from tokengate.storage.models import SessionData
from tokengate.storage.token_store import BearerTokenCache, CookieTokenStore


class _ClockedCache(BearerTokenCache):
    """BearerTokenCache with a controllable clock."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.now = 1_000_000

    def _now(self) -> int:
        return self.now


class TestCookieTokenStore:
    """Tests for CookieTokenStore."""

    async def test_set_then_get(self):
        session = {}
        store = CookieTokenStore(session)

        assert await store.set("oauth2", SessionData(access_token="A1", updated=5)) is True
        assert session["oauth2"] == {"access_token": "A1", "updated": 5}

        loaded = await store.get("oauth2")
        assert loaded.access_token == "A1"
        assert loaded.updated == 5

    async def test_reads_json_string_values(self):
        store = CookieTokenStore({"oauth2": '{"access_token": "A1", "scope": "openid"}'})

        loaded = await store.get("oauth2")

        assert loaded.scope == "openid"

    async def test_malformed_value_reads_as_missing(self):
        store = CookieTokenStore({"oauth2": "{not json"})

        assert await store.get("oauth2") is None

    async def test_missing_session_object(self):
        store = CookieTokenStore(None)

        assert store.available is False
        assert await store.get("oauth2") is None
        assert await store.set("oauth2", SessionData(access_token="A1")) is False
        assert await store.clear("oauth2") is False

    async def test_clear_removes_key(self):
        session = {"oauth2": {"access_token": "A1"}, "other": 1}
        store = CookieTokenStore(session)

        assert await store.clear("oauth2") is True
        assert session == {"other": 1}


class TestBearerTokenCache:
    """Tests for LRU eviction and TTL expiry."""

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            BearerTokenCache(capacity=0)

    async def test_get_returns_copy(self):
        cache = BearerTokenCache()
        await cache.set("T1", SessionData(access_token="T1", token_info={"active": True}))

        first = await cache.get("T1")
        first.token_info["active"] = False
        second = await cache.get("T1")

        assert second.token_info == {"active": True}

    async def test_least_recently_used_is_evicted(self):
        cache = BearerTokenCache(capacity=2)
        await cache.set("T1", SessionData(access_token="T1"))
        await cache.set("T2", SessionData(access_token="T2"))
        # Touch T1 so T2 becomes the eviction candidate
        await cache.get("T1")
        await cache.set("T3", SessionData(access_token="T3"))

        assert len(cache) == 2
        assert await cache.get("T2") is None
        assert (await cache.get("T1")).access_token == "T1"
        assert (await cache.get("T3")).access_token == "T3"

    async def test_overwrite_does_not_evict(self):
        cache = BearerTokenCache(capacity=2)
        await cache.set("T1", SessionData(access_token="T1"))
        await cache.set("T2", SessionData(access_token="T2"))
        await cache.set("T1", SessionData(access_token="T1", scope="read"))

        assert len(cache) == 2
        assert (await cache.get("T1")).scope == "read"

    async def test_entries_expire_after_ttl(self):
        cache = _ClockedCache(ttl_ms=1000)
        await cache.set("T1", SessionData(access_token="T1"))

        cache.now += 999
        assert await cache.get("T1") is not None
        cache.now += 1
        assert await cache.get("T1") is None
        assert len(cache) == 0

    async def test_expired_entries_pruned_before_lru_eviction(self):
        cache = _ClockedCache(capacity=2, ttl_ms=1000)
        await cache.set("old", SessionData(access_token="old"))
        cache.now += 900
        await cache.set("young", SessionData(access_token="young"))
        cache.now += 200

        await cache.set("new", SessionData(access_token="new"))

        # "old" expired and was pruned, so "young" survives
        assert await cache.get("young") is not None
        assert await cache.get("new") is not None

    async def test_clear(self):
        cache = BearerTokenCache()
        await cache.set("T1", SessionData(access_token="T1"))

        assert await cache.clear("T1") is True
        assert await cache.clear("T1") is False
        assert await cache.get("T1") is None

    def test_concurrent_writers_respect_capacity(self):
        cache = BearerTokenCache(capacity=50)

        def writer(offset):
            for i in range(200):
                asyncio.run(cache.set(f"T{offset}-{i}", SessionData(access_token="x")))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache) == 50
