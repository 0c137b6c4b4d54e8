"""Caching USGS proxy: serve from cache, else fetch, store and persist in the background."""

from __future__ import annotations

import enum
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

from quake_cache.cache import CachedResponse, ResponseCache
from quake_cache.clients.usgs_client import UsgsClient
from quake_cache.config import resolve_cache_ttl
from quake_cache.result import Err, ErrorKind
from quake_cache.tasks import BackgroundTasks
from quake_cache.upsert import BatchStore, UpsertCounts, upsert_features

logger = logging.getLogger(__name__)

SOURCE = "usgs-proxy-handler"
MAX_RECENT_QUAKE_IDS = 1000


class CacheState(enum.Enum):
    MISS = "MISS"
    UPSTREAM_FETCHING = "UPSTREAM_FETCHING"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    HIT = "HIT"
    FRESH_STORED = "FRESH_STORED"


@dataclass(frozen=True)
class ProxyResponse:
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)
    state: Optional[CacheState] = None

    def json(self):
        return json.loads(self.body)


def _json_response(payload: dict, status: int, state: Optional[CacheState] = None) -> ProxyResponse:
    return ProxyResponse(
        status=status,
        body=json.dumps(payload).encode(),
        headers={"Content-Type": "application/json"},
        state=state,
    )


class RecentIdFilter:
    """Bounded, insertion-ordered set of ids this process already persisted."""

    def __init__(self, max_size: int = MAX_RECENT_QUAKE_IDS):
        self.max_size = max_size
        self._ids: dict[str, None] = {}
        self._lock = threading.Lock()

    def __contains__(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def unseen(self, features: Iterable[dict]) -> list[dict]:
        with self._lock:
            return [
                f for f in features
                if isinstance(f, dict) and f.get("id") and f["id"] not in self._ids
            ]

    def remember(self, event_ids: Iterable[str]) -> None:
        with self._lock:
            for event_id in event_ids:
                self._ids.pop(event_id, None)
                self._ids[event_id] = None
            overflow = len(self._ids) - self.max_size
            if overflow > 0:
                for stale in list(self._ids)[:overflow]:
                    del self._ids[stale]
                logger.info("Recent-id filter evicted %d oldest id(s)", overflow)


class UsgsProxy:
    """Request handler behind ``GET /api/usgs-proxy``.

    The cache, store and id filter are shared; the ``BackgroundTasks``
    passed to ``handle`` belongs to a single request.
    """

    def __init__(
        self,
        client: UsgsClient,
        cache: ResponseCache,
        store: Optional[BatchStore] = None,
        cache_ttl_raw: Optional[str] = None,
        recent_ids: Optional[RecentIdFilter] = None,
    ):
        self.client = client
        self.cache = cache
        self.store = store
        self.cache_ttl_raw = cache_ttl_raw
        self.recent_ids = recent_ids if recent_ids is not None else RecentIdFilter()

    async def handle(
        self,
        request_url: str,
        api_url: Optional[str],
        tasks: BackgroundTasks,
    ) -> ProxyResponse:
        if not api_url:
            return _json_response(
                {"message": "Missing apiUrl query parameter for proxy request", "source": SOURCE},
                400,
            )

        try:
            cached = await self.cache.match(request_url)
            if cached is not None:
                logger.info("Cache hit for %s", request_url)
                return ProxyResponse(
                    status=cached.status,
                    body=cached.body,
                    headers={**cached.headers, "X-Cache-Status": CacheState.HIT.value},
                    state=CacheState.HIT,
                )

            logger.info("Cache miss for %s", request_url)
            return await self._fetch_and_store(request_url, api_url, tasks)
        except Exception as exc:
            logger.error("Proxy failure for %s: %s", api_url, exc, exc_info=True)
            return _json_response(
                {"message": f"USGS API fetch failed: {exc}", "source": SOURCE},
                500,
                CacheState.UPSTREAM_ERROR,
            )

    async def _fetch_and_store(
        self, request_url: str, api_url: str, tasks: BackgroundTasks,
    ) -> ProxyResponse:
        logger.debug("%s → %s", CacheState.MISS.value, CacheState.UPSTREAM_FETCHING.value)
        result = await self.client.fetch_feed(api_url)

        if isinstance(result, Err):
            return self._error_response(api_url, result)

        data = result.value
        ttl = resolve_cache_ttl(self.cache_ttl_raw)
        fresh = CachedResponse(
            status=200,
            body=json.dumps(data).encode(),
            headers={
                "Content-Type": "application/json",
                "Cache-Control": f"s-maxage={ttl}",
            },
        )

        tasks.spawn(self._cache_put(request_url, api_url, fresh), name=f"cache-put:{api_url}")

        features = data.get("features")
        if isinstance(features, list) and features:
            if self.store is not None:
                tasks.spawn(self.persist(features), name=f"upsert:{api_url}")
            else:
                logger.debug("No store configured, skipping persistence of %d feature(s)", len(features))

        return ProxyResponse(
            status=fresh.status,
            body=fresh.body,
            headers={**fresh.headers, "X-Cache-Status": CacheState.FRESH_STORED.value},
            state=CacheState.FRESH_STORED,
        )

    def _error_response(self, api_url: str, err: Err) -> ProxyResponse:
        if err.kind is ErrorKind.UPSTREAM and err.status is not None:
            logger.warning("Upstream returned %d for %s", err.status, api_url)
            return _json_response(
                {"message": err.message, "source": SOURCE, "upstream_status": err.status},
                err.status,
                CacheState.UPSTREAM_ERROR,
            )
        logger.error("Fetch or JSON parse error for %s: %s", api_url, err.message)
        return _json_response(
            {"message": f"USGS API fetch failed: {err.message}", "source": SOURCE},
            500,
            CacheState.UPSTREAM_ERROR,
        )

    async def _cache_put(self, key: str, api_url: str, response: CachedResponse) -> None:
        try:
            await self.cache.put(key, response)
        except Exception as exc:
            logger.error("Failed to cache response for %s: %s", api_url, exc)

    async def persist(self, features: list[dict]) -> Optional[UpsertCounts]:
        """Upsert features this process hasn't already written."""
        fresh = self.recent_ids.unseen(features)
        skipped = len(features) - len(fresh)
        if skipped:
            logger.info("Recent-id filter skipped %d feature(s) before upsert", skipped)
        if not fresh:
            logger.info("No new features to upsert")
            return None

        counts = await upsert_features(self.store, fresh)
        if counts.success_count > 0:
            self.recent_ids.remember(f["id"] for f in fresh)
        return counts
