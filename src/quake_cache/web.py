"""Flask app: USGS proxy, backfill, scheduled ingest and stored-event queries."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from flask import Flask, Response, jsonify, request

from quake_cache.backfill import NO_STORE_MESSAGE, batch_fetch, ingest_feed
from quake_cache.cache import MemoryResponseCache
from quake_cache.clients.usgs_client import UsgsClient
from quake_cache.config import Settings
from quake_cache.db import EarthquakeStore, store_from_dsn
from quake_cache.models import now_ms
from quake_cache.proxy import RecentIdFilter, UsgsProxy
from quake_cache.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

TIME_WINDOW_DAYS = {"day": 1, "week": 7, "month": 30}

FILTER_PARAMS = {
    "minMag": "min_magnitude",
    "maxMag": "max_magnitude",
    "minDepth": "min_depth",
    "maxDepth": "max_depth",
}


def _run_with_client(client_factory: Callable[[], UsgsClient], work):
    """Run ``work(client)`` on a fresh loop, closing the client afterwards."""

    async def _main():
        client = client_factory()
        try:
            return await work(client)
        finally:
            await client.close()

    return asyncio.run(_main())


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[EarthquakeStore] = None,
    cache: Optional[MemoryResponseCache] = None,
    client_factory: Optional[Callable[[], UsgsClient]] = None,
) -> Flask:
    settings = settings or Settings.from_env()
    if store is None:
        store = store_from_dsn(settings.database_url)
    cache = cache if cache is not None else MemoryResponseCache(default_ttl=settings.cache_ttl)
    recent_ids = RecentIdFilter()
    if client_factory is None:
        def client_factory():
            return UsgsClient(timeout_seconds=settings.http_timeout_seconds)

    app = Flask(__name__)
    app.config["QUAKE_SETTINGS"] = settings
    app.extensions["quake_cache"] = {"store": store, "cache": cache, "recent_ids": recent_ids}

    @app.route("/api/usgs-proxy", methods=["GET"])
    def usgs_proxy():
        # Background work (cache put, upsert) outlives the response: the loop
        # stays open until the WSGI server closes the response.
        loop = asyncio.new_event_loop()
        tasks = BackgroundTasks()
        client = client_factory()
        proxy = UsgsProxy(client, cache, store, settings.cache_ttl_raw, recent_ids)

        try:
            result = loop.run_until_complete(
                proxy.handle(request.url, request.args.get("apiUrl"), tasks)
            )
        except BaseException:
            loop.run_until_complete(client.close())
            loop.close()
            raise

        response = Response(result.body, status=result.status, headers=result.headers)
        request_url = request.url
        finished = []

        def _finish():
            if finished:
                return
            finished.append(True)
            try:
                loop.run_until_complete(tasks.drain())
                loop.run_until_complete(client.close())
            finally:
                loop.close()
            if tasks.failures:
                logger.warning("%d background task(s) failed for %s", len(tasks.failures), request_url)

        response.call_on_close(_finish)
        return response

    @app.route("/api/batch-usgs-fetch", methods=["GET"])
    def batch_usgs_fetch():
        start = request.args.get("startDate")
        end = request.args.get("endDate")
        try:
            status, body = _run_with_client(
                client_factory, lambda client: batch_fetch(client, store, start, end)
            )
        except Exception as exc:
            logger.error("Batch fetch %s..%s failed: %s", start, end, exc, exc_info=True)
            return jsonify({"message": f"Unexpected error: {exc}"}), 500
        return jsonify(body), status

    @app.route("/ingest", methods=["POST"])
    def ingest():
        """Triggered by the scheduler to pull the latest hour of events."""
        try:
            status, body = _run_with_client(
                client_factory, lambda client: ingest_feed(client, store, settings.feed_url_override)
            )
        except Exception as exc:
            logger.error("Ingest failed: %s", exc, exc_info=True)
            return jsonify({"error": str(exc)}), 500
        logger.info("Ingest finished with %d: %s", status, body)
        return jsonify(body), status

    @app.route("/api/get-earthquakes", methods=["GET"])
    def get_earthquakes():
        time_window = request.args.get("timeWindow", "day")
        if time_window not in TIME_WINDOW_DAYS:
            return jsonify({
                "message": "Invalid timeWindow parameter. Valid values are 'day', 'week', 'month'.",
            }), 400
        if store is None:
            return jsonify({"message": NO_STORE_MESSAGE}), 500

        bounds = {}
        for param, key in FILTER_PARAMS.items():
            raw = request.args.get(param)
            if raw is None or raw == "":
                continue
            try:
                bounds[key] = float(raw)
            except ValueError:
                return jsonify({"message": f"Invalid {param} parameter. Expected a number."}), 400

        since = now_ms() - TIME_WINDOW_DAYS[time_window] * 24 * 3_600_000
        try:
            records = store.query_records(since_ms=since, **bounds)
        except Exception as exc:
            logger.error("Query for %s window failed: %s", time_window, exc, exc_info=True)
            return jsonify({"message": f"Failed to retrieve earthquakes: {exc}"}), 500

        features = []
        for record in records:
            try:
                features.append(record.feature())
            except ValueError as exc:
                logger.warning("Stored feature %s is not valid JSON: %s", record.id, exc)
        return jsonify(features), 200

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"}), 200

    @app.route("/", methods=["GET"])
    def root():
        return jsonify({
            "service": "usgs-quake-cache",
            "status": "running",
            "database": store is not None,
            "cached_responses": len(cache),
        }), 200

    return app


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    settings = Settings.from_env()
    app = create_app(settings)
    app.run(host="0.0.0.0", port=settings.port, debug=False)


if __name__ == "__main__":
    main()
