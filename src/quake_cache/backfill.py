"""Historical backfill over a date range, and the scheduled hourly ingest."""

from __future__ import annotations

import logging
import re
from typing import Optional

from quake_cache.clients.usgs_client import FEEDS, UsgsClient, fdsn_query_url
from quake_cache.result import Err, ErrorKind, Ok, Result
from quake_cache.upsert import BatchStore, upsert_features

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

NO_STORE_MESSAGE = "Service configuration error: database not available."


def validate_date_range(start: Optional[str], end: Optional[str]) -> Result[tuple[str, str]]:
    if not start or not end:
        return Err(
            ErrorKind.VALIDATION,
            "Missing startDate or endDate query parameter. Use YYYY-MM-DD format.",
            400,
        )
    if not _DATE_RE.match(start) or not _DATE_RE.match(end):
        return Err(ErrorKind.VALIDATION, "Invalid date format. Use YYYY-MM-DD.", 400)
    return Ok((start, end))


async def batch_fetch(
    client: UsgsClient,
    store: Optional[BatchStore],
    start: Optional[str],
    end: Optional[str],
) -> tuple[int, dict]:
    """Fetch every event between two dates and upsert them.

    Returns ``(http_status, body)``.
    """
    checked = validate_date_range(start, end)
    if isinstance(checked, Err):
        return checked.status, {"message": checked.message}

    if store is None:
        logger.error("Batch fetch requested for %s..%s but no database is configured", start, end)
        return 500, {"message": NO_STORE_MESSAGE}

    url = fdsn_query_url(start, end)
    logger.info("Batch fetch %s..%s from %s", start, end, url)
    result = await client.fetch_feed(url)

    if isinstance(result, Err):
        if result.kind is ErrorKind.UPSTREAM and result.status is not None:
            return result.status, {"message": result.message}
        return 500, {"message": f"Unexpected error: {result.message}"}

    features = result.value.get("features")
    if not isinstance(features, list) or not features:
        logger.info("No features for %s..%s", start, end)
        return 200, {
            "message": "No features found in USGS response for the given date range.",
            "startDate": start,
            "endDate": end,
            "count": 0,
        }

    counts = await upsert_features(store, features)
    logger.info(
        "Batch %s..%s: fetched %d, upserted %d, errors %d",
        start, end, len(features), counts.success_count, counts.error_count,
    )
    return 200, {
        "message": "Batch fetch and upsert process complete.",
        "startDate": start,
        "endDate": end,
        "fetched": len(features),
        "upserted": counts.success_count,
        "errors": counts.error_count,
    }


async def ingest_feed(
    client: UsgsClient,
    store: Optional[BatchStore],
    url: Optional[str] = None,
) -> tuple[int, dict]:
    """One scheduled run: pull a summary feed (hourly by default) into the store."""
    url = url or FEEDS["hour"]
    if store is None:
        logger.error("Scheduled ingest skipped, no database configured")
        return 500, {"message": NO_STORE_MESSAGE}

    result = await client.fetch_feed(url)
    if isinstance(result, Err):
        logger.error("Scheduled ingest of %s failed: %s", url, result.message)
        status = result.status if result.kind is ErrorKind.UPSTREAM and result.status is not None else 502
        return status, {"message": result.message, "feed": url}

    features = result.value.get("features")
    if not isinstance(features, list) or not features:
        logger.info("Scheduled ingest: %s returned no features", url)
        return 200, {"message": "No features to ingest.", "feed": url, "fetched": 0, "upserted": 0, "errors": 0}

    counts = await upsert_features(store, features)
    return 200, {
        "message": "Ingest complete.",
        "feed": url,
        "fetched": len(features),
        "upserted": counts.success_count,
        "errors": counts.error_count,
    }
