"""Tests for the caching USGS proxy handler."""

from __future__ import annotations

import asyncio
import json
import logging
from urllib.parse import quote

import httpx
import pytest
import respx

from conftest import FailingStore, MemoryStore, feed, make_feature
from quake_cache.cache import CachedResponse, MemoryResponseCache
from quake_cache.clients.usgs_client import FEEDS, UsgsClient
from quake_cache.proxy import CacheState, RecentIdFilter, UsgsProxy
from quake_cache.tasks import BackgroundTasks

API_URL = FEEDS["day"]
REQUEST_URL = f"http://localhost/api/usgs-proxy?apiUrl={quote(API_URL, safe='')}"


class SpyCache(MemoryResponseCache):
    def __init__(self):
        super().__init__()
        self.puts: list[tuple[str, CachedResponse]] = []

    async def put(self, key, response):
        self.puts.append((key, response))
        await super().put(key, response)


class BrokenCache(MemoryResponseCache):
    async def put(self, key, response):
        raise OSError("cache storage full")


def _handle(proxy: UsgsProxy, api_url=API_URL, request_url=REQUEST_URL):
    async def main():
        tasks = BackgroundTasks()
        try:
            response = await proxy.handle(request_url, api_url, tasks)
            await tasks.drain()
        finally:
            await proxy.client.close()
        return response, tasks

    return asyncio.run(main())


def _proxy(cache=None, store=None, ttl=None, recent_ids=None) -> UsgsProxy:
    return UsgsProxy(
        UsgsClient(),
        cache if cache is not None else SpyCache(),
        store=store,
        cache_ttl_raw=ttl,
        recent_ids=recent_ids,
    )


# ── Request validation ───────────────────────────────────────────────────


class TestMissingApiUrl:
    @pytest.mark.parametrize("api_url", [None, ""])
    def test_returns_400(self, api_url):
        response, _ = _handle(_proxy(), api_url=api_url)
        assert response.status == 400
        body = response.json()
        assert body["message"] == "Missing apiUrl query parameter for proxy request"
        assert body["source"] == "usgs-proxy-handler"


# ── Cache miss / hit ─────────────────────────────────────────────────────


class TestCacheMiss:
    def test_one_fetch_one_put_with_default_ttl(self):
        cache = SpyCache()
        payload = feed(make_feature("a"))
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=payload))
            response, _ = _handle(_proxy(cache=cache))

        assert route.call_count == 1
        assert len(cache.puts) == 1
        key, stored = cache.puts[0]
        assert key == REQUEST_URL
        assert stored.headers["Cache-Control"] == "s-maxage=600"
        assert json.loads(stored.body) == payload

        assert response.status == 200
        assert response.state is CacheState.FRESH_STORED
        assert response.headers["Cache-Control"] == "s-maxage=600"
        assert response.headers["Content-Type"] == "application/json"
        assert response.headers["X-Cache-Status"] == "FRESH_STORED"
        assert response.json() == payload

    def test_configured_ttl(self):
        cache = SpyCache()
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed()))
            _handle(_proxy(cache=cache, ttl="120"))
        assert cache.puts[0][1].headers["Cache-Control"] == "s-maxage=120"

    @pytest.mark.parametrize("raw", ["abc", "0", "-100"])
    def test_invalid_ttl_falls_back_with_one_warning(self, raw, caplog):
        cache = SpyCache()
        caplog.set_level(logging.WARNING)
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed()))
            _handle(_proxy(cache=cache, ttl=raw))

        assert cache.puts[0][1].headers["Cache-Control"] == "s-maxage=600"
        warnings = [
            r for r in caplog.records
            if r.levelno == logging.WARNING and "WORKER_CACHE_DURATION_SECONDS" in r.getMessage()
        ]
        assert len(warnings) == 1
        assert f'"{raw}"' in warnings[0].getMessage()

    def test_missing_ttl_does_not_warn(self, caplog):
        caplog.set_level(logging.WARNING)
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed()))
            _handle(_proxy())
        assert not any("WORKER_CACHE_DURATION_SECONDS" in r.getMessage() for r in caplog.records)


class TestCacheHit:
    def test_hit_never_fetches(self):
        cache = SpyCache()
        cached_body = json.dumps(feed(make_feature("cached"))).encode()
        asyncio.run(cache.put(
            REQUEST_URL,
            CachedResponse(200, cached_body, {"Content-Type": "application/json", "Cache-Control": "s-maxage=600"}),
        ))

        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed()))
            response, tasks = _handle(_proxy(cache=cache))

        assert route.call_count == 0
        assert response.state is CacheState.HIT
        assert response.headers["X-Cache-Status"] == "HIT"
        assert response.body == cached_body
        assert tasks.completed == 0

    def test_second_request_served_from_cache(self):
        cache = SpyCache()
        proxy = _proxy(cache=cache)
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed(make_feature("a"))))
            first, _ = _handle(proxy)
            second, _ = _handle(proxy)

        assert route.call_count == 1
        assert first.state is CacheState.FRESH_STORED
        assert second.state is CacheState.HIT
        assert second.body == first.body

    def test_distinct_request_urls_cached_separately(self):
        cache = SpyCache()
        proxy = _proxy(cache=cache)
        week_request = f"http://localhost/api/usgs-proxy?apiUrl={quote(FEEDS['week'], safe='')}"
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed()))
            week = respx_mock.get(FEEDS["week"]).mock(return_value=httpx.Response(200, json=feed()))
            _handle(proxy)
            response, _ = _handle(proxy, api_url=FEEDS["week"], request_url=week_request)
        assert week.call_count == 1
        assert response.state is CacheState.FRESH_STORED
        assert len(cache) == 2


# ── Upstream failures ────────────────────────────────────────────────────


class TestUpstreamErrors:
    def test_non_2xx_passes_status_through(self):
        cache = SpyCache()
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(503, text="Service Unavailable"))
            response, _ = _handle(_proxy(cache=cache))

        assert response.status == 503
        assert response.state is CacheState.UPSTREAM_ERROR
        body = response.json()
        assert body["upstream_status"] == 503
        assert body["source"] == "usgs-proxy-handler"
        assert body["message"] == "Error fetching data from USGS API: 503 - Service Unavailable"
        assert cache.puts == []

    def test_error_body_truncated_to_100_chars(self):
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(500, text="x" * 500))
            response, _ = _handle(_proxy())
        assert response.json()["message"] == "Error fetching data from USGS API: 500 - " + "x" * 100

    def test_network_error_is_500(self):
        cache = SpyCache()
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(side_effect=httpx.ConnectError("connection refused"))
            response, _ = _handle(_proxy(cache=cache))

        assert response.status == 500
        assert response.json()["message"] == "USGS API fetch failed: connection refused"
        assert cache.puts == []

    def test_invalid_json_is_500(self):
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(200, text="<html>not json</html>"))
            response, _ = _handle(_proxy())
        assert response.status == 500
        assert response.json()["message"].startswith("USGS API fetch failed:")

    def test_cache_put_failure_does_not_fail_request(self, caplog):
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed()))
            response, tasks = _handle(_proxy(cache=BrokenCache()))
        assert response.status == 200
        assert tasks.failures == []
        assert any("Failed to cache" in r.getMessage() for r in caplog.records)


# ── Persistence side effect ──────────────────────────────────────────────


class TestPersistence:
    def test_features_upserted_in_background(self):
        store = MemoryStore()
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed(make_feature("a"), make_feature("b"))))
            _handle(_proxy(store=store))
        assert set(store.rows) == {"a", "b"}

    def test_empty_features_skip_upsert(self):
        store = MemoryStore()
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed()))
            _handle(_proxy(store=store))
        assert store.batches == []

    def test_recent_ids_skip_already_persisted(self):
        store = MemoryStore()
        recent = RecentIdFilter()
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed(make_feature("a"), make_feature("b"))))
            _handle(_proxy(store=store, recent_ids=recent))

        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(
                200, json=feed(make_feature("a"), make_feature("b"), make_feature("c")),
            ))
            # fresh cache so the second request misses
            _handle(_proxy(store=store, recent_ids=recent))

        assert len(store.batches) == 2
        assert [r["id"] for r in store.batches[1]] == ["c"]

    def test_failed_batch_ids_not_remembered(self):
        recent = RecentIdFilter()
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed(make_feature("a"))))
            response, tasks = _handle(_proxy(store=FailingStore(), recent_ids=recent))
        assert response.status == 200
        assert tasks.failures == []
        assert "a" not in recent

    def test_no_store_still_serves(self):
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(API_URL).mock(return_value=httpx.Response(200, json=feed(make_feature("a"))))
            response, _ = _handle(_proxy(store=None))
        assert response.status == 200


class TestRecentIdFilter:
    def test_unseen(self):
        f = RecentIdFilter()
        f.remember(["a"])
        assert [x["id"] for x in f.unseen([make_feature("a"), make_feature("b")])] == ["b"]

    def test_evicts_oldest(self):
        f = RecentIdFilter(max_size=3)
        f.remember(["a", "b", "c"])
        f.remember(["d"])
        assert len(f) == 3
        assert "a" not in f
        assert "d" in f

    def test_default_size(self):
        f = RecentIdFilter()
        f.remember(str(i) for i in range(1005))
        assert len(f) == 1000
        assert "0" not in f
        assert "1004" in f
