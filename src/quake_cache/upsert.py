"""Record upsert engine: validate features, write them as one batch.

The store's ``batch`` is all-or-nothing and gives no per-statement outcome,
so a failed batch is counted as failed in full. Per-record attribution would
need one awaited statement per record.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol

from quake_cache.models import EarthquakeRecord, now_ms
from quake_cache.result import ValidationError

logger = logging.getLogger(__name__)


class BatchStore(Protocol):
    def batch(self, rows: list[dict]) -> Any: ...


@dataclass(frozen=True)
class UpsertCounts:
    success_count: int = 0
    error_count: int = 0

    def to_dict(self) -> dict:
        return {"successCount": self.success_count, "errorCount": self.error_count}


def build_rows(features: Iterable[Any], retrieved_at: Optional[int] = None) -> tuple[list[dict], int]:
    """Convert features to upsert rows. Returns (rows, rejected_count)."""
    retrieved_at = retrieved_at if retrieved_at is not None else now_ms()
    rows: list[dict] = []
    rejected = 0

    for feature in features:
        try:
            record = EarthquakeRecord.from_feature(feature, retrieved_at=retrieved_at)
        except ValidationError as exc:
            feature_id = feature.get("id") if isinstance(feature, dict) else None
            logger.warning("Skipping feature %s: %s", feature_id or "ID missing", "; ".join(exc.errors))
            rejected += 1
            continue
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping feature %s: %s", feature.get("id"), exc)
            rejected += 1
            continue
        rows.append(record.to_row())

    return rows, rejected


async def upsert_features(store: Optional[BatchStore], features: Optional[list]) -> UpsertCounts:
    """Insert-or-update every valid feature. Never raises.

    Returns how many rows the store accepted and how many features were
    rejected or lost to a failed batch.
    """
    total = len(features) if features else 0
    if store is None:
        logger.error("No database configured, cannot upsert %d feature(s)", total)
        return UpsertCounts(0, total)
    if not features:
        logger.info("No features provided to upsert")
        return UpsertCounts(0, 0)

    logger.info("Starting upsert for %d feature(s)", total)
    rows, error_count = build_rows(features)
    success_count = 0

    if rows:
        try:
            await asyncio.to_thread(store.batch, rows)
        except Exception as exc:
            logger.error("Batch upsert of %d row(s) failed: %s", len(rows), exc, exc_info=True)
            error_count += len(rows)
        else:
            success_count = len(rows)

    logger.info(
        "Upsert complete: attempted %d, success %d, errors %d",
        len(rows), success_count, error_count,
    )
    return UpsertCounts(success_count, error_count)
