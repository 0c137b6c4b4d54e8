"""Data models for persisted earthquake records and cluster definitions."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, asdict, field
from typing import Any, Optional

from quake_cache.result import ValidationError

DETAIL_URL_TEMPLATE = "https://earthquake.usgs.gov/earthquakes/feed/v1.0/detail/{id}.geojson"

# Columns rewritten on conflict; `id` is the immutable key.
MUTABLE_COLUMNS = (
    "event_time",
    "latitude",
    "longitude",
    "depth",
    "magnitude",
    "place",
    "detail_url",
    "raw_feature",
    "retrieved_at",
)


def now_ms() -> int:
    return int(time.time() * 1000)


def validate_feature(feature: Any) -> list[str]:
    """Validate a GeoJSON feature for persistence. Returns error messages (empty = valid).

    Only absent values are rejected; a magnitude of 0 is a real reading.
    """
    if not isinstance(feature, dict):
        return ["feature is not an object"]

    errors: list[str] = []
    if not feature.get("id"):
        errors.append("id is missing")

    props = feature.get("properties")
    if not isinstance(props, dict):
        errors.append("properties missing")
        props = {}

    geometry = feature.get("geometry")
    coords = geometry.get("coordinates") if isinstance(geometry, dict) else None
    if not isinstance(coords, (list, tuple)) or len(coords) < 3:
        errors.append("geometry.coordinates needs lon, lat, depth")
        coords = (None, None, None)

    required = {
        "event_time": props.get("time"),
        "longitude": coords[0],
        "latitude": coords[1],
        "depth": coords[2],
        "magnitude": props.get("mag"),
        "place": props.get("place"),
    }
    for name, value in required.items():
        if value is None:
            errors.append(f"{name} is null")

    return errors


@dataclass
class EarthquakeRecord:
    """One row of `earthquake_events`, overwritten on every retrieval."""

    id: str
    event_time: int             # epoch ms
    latitude: float
    longitude: float
    depth: float                # km
    magnitude: float
    place: str
    detail_url: str
    raw_feature: str            # verbatim serialized feature
    retrieved_at: int = field(default_factory=now_ms)

    @classmethod
    def from_feature(cls, feature: dict, retrieved_at: Optional[int] = None) -> EarthquakeRecord:
        errors = validate_feature(feature)
        if errors:
            raise ValidationError(errors)

        props = feature["properties"]
        lon, lat, depth = feature["geometry"]["coordinates"][:3]
        return cls(
            id=feature["id"],
            event_time=int(props["time"]),
            latitude=float(lat),
            longitude=float(lon),
            depth=float(depth),
            magnitude=float(props["mag"]),
            place=props["place"],
            detail_url=props.get("detail") or DETAIL_URL_TEMPLATE.format(id=feature["id"]),
            raw_feature=json.dumps(feature),
            retrieved_at=retrieved_at if retrieved_at is not None else now_ms(),
        )

    @classmethod
    def from_row(cls, row: dict) -> EarthquakeRecord:
        raw = row.get("raw_feature")
        if raw is not None and not isinstance(raw, str):
            # JSONB columns come back already decoded
            raw = json.dumps(raw)
        return cls(
            id=row["id"],
            event_time=row["event_time"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            depth=row["depth"],
            magnitude=row["magnitude"],
            place=row["place"],
            detail_url=row["detail_url"],
            raw_feature=raw or "",
            retrieved_at=row["retrieved_at"],
        )

    def to_row(self) -> dict:
        return asdict(self)

    def feature(self) -> dict:
        return json.loads(self.raw_feature)


@dataclass
class ClusterDefinition:
    """Cluster of related events, produced offline and read for prerendering."""

    id: str
    strongest_quake_id: str
    earthquake_ids: list[str]
    stable_key: Optional[str] = None
    title: Optional[str] = None
    location_name: Optional[str] = None
    max_magnitude: Optional[float] = None
    quake_count: int = 0
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: dict) -> ClusterDefinition:
        ids = row.get("earthquake_ids") or []
        if isinstance(ids, str):
            ids = json.loads(ids)
        return cls(
            id=row["id"],
            strongest_quake_id=row["strongest_quake_id"],
            earthquake_ids=list(ids),
            stable_key=row.get("stable_key"),
            title=row.get("title"),
            location_name=row.get("location_name"),
            max_magnitude=row.get("max_magnitude"),
            quake_count=row.get("quake_count") or len(ids),
            start_time=row.get("start_time"),
            end_time=row.get("end_time"),
            updated_at=row.get("updated_at"),
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self))
