"""Significance rules shared by indexing and UI filtering."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Union

from quake_cache.models import EarthquakeRecord

logger = logging.getLogger(__name__)

MIN_SIGNIFICANT_MAGNITUDE = 4.5

# Products whose presence means the event has faulting data worth indexing.
RICH_PRODUCTS = ("moment-tensor", "focal-mechanism")

RecordLike = Union[EarthquakeRecord, Mapping[str, Any]]


def _get(record: RecordLike, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def has_rich_products(raw_feature: Any, event_id: Any = None) -> bool:
    """True if the stored feature carries a moment tensor or focal mechanism.

    ``raw_feature`` may be the serialized JSON text or an already decoded
    dict. Anything unreadable counts as no rich data.
    """
    if not raw_feature:
        return False
    try:
        feature = json.loads(raw_feature) if isinstance(raw_feature, (str, bytes)) else raw_feature
        products = (feature.get("properties") or {}).get("products")
    except (ValueError, AttributeError) as exc:
        logger.warning("Failed to parse raw_feature for event %s: %s", event_id, exc)
        return False
    if not isinstance(products, Mapping):
        return False
    return any(products.get(name) for name in RICH_PRODUCTS)


def is_significant(record: RecordLike | None) -> bool:
    """Magnitude >= 4.5, or rich scientific products in the raw feature."""
    if record is None:
        return False

    magnitude = _get(record, "magnitude")
    if isinstance(magnitude, (int, float)) and magnitude >= MIN_SIGNIFICANT_MAGNITUDE:
        return True

    return has_rich_products(_get(record, "raw_feature"), _get(record, "id"))
