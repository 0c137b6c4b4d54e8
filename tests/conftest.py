"""Shared fixtures: GeoJSON feature factory, in-memory stores, scripted feed client."""

from __future__ import annotations

from typing import Optional

import pytest

from quake_cache.models import EarthquakeRecord
from quake_cache.result import Err, ErrorKind, Ok

NOW_MS = 1_700_000_000_000
HOUR_MS = 3_600_000


def make_feature(
    event_id: str = "us7000abcd",
    mag: Optional[float] = 3.2,
    time_ms: Optional[int] = NOW_MS - HOUR_MS // 2,
    place: Optional[str] = "10 km NW of Somewhere, CA",
    coords=(-120.3, 35.5, 10.0),
    alert: Optional[str] = None,
    tsunami: int = 0,
    products: Optional[dict] = None,
    detail: Optional[str] = None,
) -> dict:
    props = {
        "mag": mag,
        "place": place,
        "time": time_ms,
        "updated": time_ms,
        "url": f"https://earthquake.usgs.gov/earthquakes/eventpage/{event_id}",
        "detail": detail,
        "alert": alert,
        "tsunami": tsunami,
        "type": "earthquake",
    }
    if products is not None:
        props["products"] = products
    return {
        "type": "Feature",
        "id": event_id,
        "properties": props,
        "geometry": {"type": "Point", "coordinates": list(coords)},
    }


def feed(*features: dict, generated: int = NOW_MS) -> dict:
    return {
        "type": "FeatureCollection",
        "metadata": {"generated": generated, "count": len(features)},
        "features": list(features),
    }


class MemoryStore:
    """Dict-backed store with the same upsert-by-id semantics as the database."""

    def __init__(self):
        self.rows: dict[str, dict] = {}
        self.batches: list[list[dict]] = []

    def batch(self, rows: list[dict]) -> int:
        self.batches.append([dict(r) for r in rows])
        for row in rows:
            self.rows[row["id"]] = dict(row)
        return len(rows)

    def query_records(
        self,
        since_ms=None,
        min_magnitude=None,
        max_magnitude=None,
        min_depth=None,
        max_depth=None,
        limit=None,
    ) -> list[EarthquakeRecord]:
        records = [EarthquakeRecord.from_row(r) for r in self.rows.values()]
        checks = (
            (since_ms, lambda r, v: r.event_time >= v),
            (min_magnitude, lambda r, v: r.magnitude >= v),
            (max_magnitude, lambda r, v: r.magnitude <= v),
            (min_depth, lambda r, v: r.depth >= v),
            (max_depth, lambda r, v: r.depth <= v),
        )
        for value, check in checks:
            if value is not None:
                records = [r for r in records if check(r, value)]
        records.sort(key=lambda r: r.event_time, reverse=True)
        return records[:limit] if limit is not None else records


class FailingStore:
    def __init__(self, exc: Exception | None = None):
        self.exc = exc or RuntimeError("connection reset")
        self.calls = 0

    def batch(self, rows):
        self.calls += 1
        raise self.exc


class ScriptedClient:
    """Stands in for UsgsClient: returns canned results per URL and counts calls."""

    def __init__(self, responses: Optional[dict] = None):
        self.responses = dict(responses or {})
        self.calls: list[str] = []
        self.closed = False

    async def fetch_feed(self, url: str):
        self.calls.append(url)
        response = self.responses.get(url)
        if response is None:
            return Err(ErrorKind.UPSTREAM, f"no scripted response for {url}")
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


def ok(data: dict) -> Ok:
    return Ok(data)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def failing_store():
    return FailingStore()
