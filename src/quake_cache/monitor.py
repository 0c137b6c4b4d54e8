"""Multi-window feed monitor.

Polls the day and week summary feeds on a fixed interval (the month feed on
demand), slices them into time windows relative to the fetch start, and
publishes the result as an immutable ``FeedSnapshot``. One window failing
never blocks the other from being published.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from quake_cache.clients.usgs_client import FEEDS, UsgsClient
from quake_cache.config import DEFAULT_REFRESH_INTERVAL_SECONDS
from quake_cache.models import now_ms
from quake_cache.result import Err

logger = logging.getLogger(__name__)

MAJOR_QUAKE_THRESHOLD = 4.5
GLOBE_QUAKE_LIMIT = 900

HOUR_MS = 3_600_000

ALERT_RANK = {"red": 0, "orange": 1, "yellow": 2}

MAGNITUDE_RANGES = (
    ("<1", float("-inf"), 1.0),
    ("1-1.9", 1.0, 2.0),
    ("2-2.9", 2.0, 3.0),
    ("3-3.9", 3.0, 4.0),
    ("4-4.9", 4.0, 5.0),
    ("5-5.9", 5.0, 6.0),
    ("6-6.9", 6.0, 7.0),
    ("7+", 7.0, float("inf")),
)

COMBINED_FAILURE_MESSAGE = "Failed to fetch critical earthquake data. Some features may be unavailable."
MONTHLY_UNAVAILABLE_MESSAGE = "Monthly data is currently unavailable or incomplete."


# ---------------------------------------------------------------------------
# Feature helpers
# ---------------------------------------------------------------------------

def _props(feature: dict) -> dict:
    props = feature.get("properties") if isinstance(feature, dict) else None
    return props if isinstance(props, dict) else {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def event_time(feature: dict) -> Optional[int]:
    value = _props(feature).get("time")
    return value if _is_number(value) else None


def magnitude(feature: dict) -> Optional[float]:
    value = _props(feature).get("mag")
    return value if _is_number(value) else None


def sanitize_features(features: Any) -> list[dict]:
    """Keep earthquakes only; null out non-numeric magnitudes; default ``detail`` to ``url``."""
    if not isinstance(features, list):
        return []
    cleaned = []
    for feature in features:
        props = _props(feature)
        if props.get("type") != "earthquake":
            continue
        mag = props.get("mag")
        cleaned.append({
            **feature,
            "properties": {
                **props,
                "mag": mag if _is_number(mag) else None,
                "detail": props.get("detail") or props.get("url"),
            },
            "geometry": feature.get("geometry") or {"type": "Point", "coordinates": [None, None, None]},
        })
    return cleaned


def filter_by_time(
    features: Iterable[dict], hours_ago_start: float, hours_ago_end: float = 0, now: Optional[int] = None,
) -> list[dict]:
    """Features with ``now - start <= time < now - end`` (hours)."""
    now = now if now is not None else now_ms()
    lower = now - hours_ago_start * HOUR_MS
    upper = now - hours_ago_end * HOUR_MS
    return [f for f in features if (t := event_time(f)) is not None and lower <= t < upper]


def filter_by_days(
    features: Iterable[dict], days_ago_start: float, days_ago_end: float = 0, now: Optional[int] = None,
) -> list[dict]:
    return filter_by_time(features, days_ago_start * 24, days_ago_end * 24, now)


def dedupe_by_id(features: Iterable[dict]) -> list[dict]:
    seen: set = set()
    unique = []
    for f in features:
        event_id = f.get("id")
        if event_id is not None:
            if event_id in seen:
                continue
            seen.add(event_id)
        unique.append(f)
    return unique


def highest_alert(features: Iterable[dict]) -> tuple[Optional[str], list[dict]]:
    """Top PAGER alert level present (green counts as none) and every quake carrying it."""
    features = list(features)
    levels = [
        a for a in (_props(f).get("alert") for f in features)
        if isinstance(a, str) and a in ALERT_RANK
    ]
    if not levels:
        return None, []
    top = min(levels, key=ALERT_RANK.__getitem__)
    return top, [f for f in features if _props(f).get("alert") == top]


def tsunami_signal(features: Iterable[dict]) -> tuple[bool, Optional[dict]]:
    flagged = [f for f in features if _props(f).get("tsunami") == 1]
    if not flagged:
        return False, None
    return True, max(flagged, key=lambda f: event_time(f) or 0)


def major_quakes(features: Iterable[dict], threshold: float = MAJOR_QUAKE_THRESHOLD) -> list[dict]:
    """Quakes at or above ``threshold`` that also carry a usable event time."""
    return [
        f for f in features
        if (m := magnitude(f)) is not None and m >= threshold and event_time(f) is not None
    ]


def consolidate_major_quakes(
    tracked_last: Optional[dict], fresh_majors: Iterable[dict],
) -> tuple[Optional[dict], Optional[dict], Optional[int]]:
    """Pick (last, previous, ms between them) from fresh majors plus the tracked last major."""
    candidates = list(fresh_majors)
    if tracked_last is not None and not any(q.get("id") == tracked_last.get("id") for q in candidates):
        candidates.append(tracked_last)

    ordered = dedupe_by_id(sorted(candidates, key=lambda q: event_time(q) or 0, reverse=True))
    last = ordered[0] if ordered else None
    previous = ordered[1] if len(ordered) > 1 else None
    between = event_time(last) - event_time(previous) if last and previous else None
    return last, previous, between


def magnitude_distribution(features: Iterable[dict]) -> list[dict]:
    counts = {name: 0 for name, _, _ in MAGNITUDE_RANGES}
    for f in features:
        mag = magnitude(f)
        if mag is None:
            continue
        for name, low, high in MAGNITUDE_RANGES:
            if low <= mag < high:
                counts[name] += 1
                break
    return [{"name": name, "count": count} for name, count in counts.items()]


def daily_counts(features: Iterable[dict], days: int, now: Optional[int] = None) -> list[dict]:
    """Per-UTC-day event counts for the last ``days`` days, oldest first."""
    now = now if now is not None else now_ms()
    today = datetime.fromtimestamp(now / 1000, tz=timezone.utc).date()
    buckets = {(today - timedelta(days=i)).isoformat(): 0 for i in range(days - 1, -1, -1)}
    for f in features:
        t = event_time(f)
        if t is None:
            continue
        day = datetime.fromtimestamp(t / 1000, tz=timezone.utc).date().isoformat()
        if day in buckets:
            buckets[day] += 1
    return [{"date": day, "count": count} for day, count in buckets.items()]


def _format_generated(generated: Any, fallback: int) -> str:
    stamp = generated if _is_number(generated) else fallback
    return datetime.fromtimestamp(stamp / 1000, tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Snapshot + monitor
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeedSnapshot:
    # day feed
    earthquakes_last_hour: list = field(default_factory=list)
    earthquakes_prior_hour: list = field(default_factory=list)
    earthquakes_last_24_hours: list = field(default_factory=list)
    has_recent_tsunami_warning: bool = False
    tsunami_triggering_quake: Optional[dict] = None
    highest_recent_alert: Optional[str] = None
    active_alert_triggering_quakes: list = field(default_factory=list)

    # week feed
    earthquakes_last_72_hours: list = field(default_factory=list)
    prev_24_hour_data: list = field(default_factory=list)
    earthquakes_last_7_days: list = field(default_factory=list)
    globe_earthquakes: list = field(default_factory=list)
    daily_counts_7_days: list = field(default_factory=list)
    magnitude_distribution_7_days: list = field(default_factory=list)

    # month feed
    all_earthquakes: list = field(default_factory=list)
    earthquakes_last_14_days: list = field(default_factory=list)
    earthquakes_last_30_days: list = field(default_factory=list)
    prev_7_day_data: list = field(default_factory=list)
    prev_14_day_data: list = field(default_factory=list)
    daily_counts_14_days: list = field(default_factory=list)
    daily_counts_30_days: list = field(default_factory=list)
    magnitude_distribution_14_days: list = field(default_factory=list)
    magnitude_distribution_30_days: list = field(default_factory=list)

    last_major_quake: Optional[dict] = None
    previous_major_quake: Optional[dict] = None
    time_between_major: Optional[int] = None

    error: Optional[str] = None
    monthly_error: Optional[str] = None
    is_loading_daily: bool = True
    is_loading_weekly: bool = True
    is_loading_monthly: bool = False
    is_initial_load: bool = True
    has_attempted_monthly_load: bool = False
    data_fetch_time: Optional[int] = None
    last_updated: Optional[str] = None


def _daily_windows(data: dict, now: int) -> tuple[dict, list[dict]]:
    features = sanitize_features(data.get("features"))
    last_24 = filter_by_time(features, 24, 0, now)
    has_tsunami, tsunami_quake = tsunami_signal(last_24)
    alert, alert_quakes = highest_alert(last_24)
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    return {
        "earthquakes_last_hour": filter_by_time(features, 1, 0, now),
        "earthquakes_prior_hour": filter_by_time(features, 2, 1, now),
        "earthquakes_last_24_hours": last_24,
        "has_recent_tsunami_warning": has_tsunami,
        "tsunami_triggering_quake": tsunami_quake,
        "highest_recent_alert": alert,
        "active_alert_triggering_quakes": alert_quakes,
        "last_updated": _format_generated(metadata.get("generated"), now),
    }, major_quakes(features)


def _weekly_windows(data: dict, now: int) -> tuple[dict, list[dict]]:
    features = sanitize_features(data.get("features"))
    last_72 = dedupe_by_id(filter_by_time(features, 72, 0, now))
    last_7_days = filter_by_time(features, 7 * 24, 0, now)
    return {
        "earthquakes_last_72_hours": last_72,
        "prev_24_hour_data": filter_by_time(features, 48, 24, now),
        "earthquakes_last_7_days": last_7_days,
        "globe_earthquakes": sorted(last_72, key=lambda f: magnitude(f) or 0, reverse=True)[:GLOBE_QUAKE_LIMIT],
        "daily_counts_7_days": daily_counts(last_7_days, 7, now),
        "magnitude_distribution_7_days": magnitude_distribution(last_7_days),
    }, major_quakes(features)


def _monthly_windows(features: list[dict], now: int) -> dict:
    last_14 = filter_by_days(features, 14, 0, now)
    last_30 = filter_by_days(features, 30, 0, now)
    return {
        "all_earthquakes": features,
        "earthquakes_last_14_days": last_14,
        "earthquakes_last_30_days": last_30,
        "prev_7_day_data": filter_by_days(features, 14, 7, now),
        "prev_14_day_data": filter_by_days(features, 28, 14, now),
        "daily_counts_14_days": daily_counts(last_14, 14, now),
        "daily_counts_30_days": daily_counts(last_30, 30, now),
        "magnitude_distribution_14_days": magnitude_distribution(last_14),
        "magnitude_distribution_30_days": magnitude_distribution(last_30),
    }


class FeedMonitor:
    """Owns the merge state and its refresh loop.

    ``start()`` runs one refresh immediately and then keeps refreshing every
    ``refresh_interval`` seconds until ``teardown()``.
    """

    def __init__(
        self,
        client: Optional[UsgsClient] = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        feeds: Optional[dict[str, str]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._owns_client = client is None
        self.client = client if client is not None else UsgsClient()
        self.refresh_interval = refresh_interval
        self.feeds = {**FEEDS, **(feeds or {})}
        self._clock = clock
        self._snapshot = FeedSnapshot()
        self._task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> FeedSnapshot:
        return self._snapshot

    def _publish(self, **changes) -> FeedSnapshot:
        self._snapshot = replace(self._snapshot, **changes)
        return self._snapshot

    async def start(self) -> FeedSnapshot:
        snapshot = await self.refresh()
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name="feed-monitor")
        return snapshot

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh()
            except Exception:
                logger.exception("Refresh cycle failed")

    async def teardown(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_client:
            await self.client.close()

    async def _load_window(self, label: str, url: str, process, now: int, updates: dict, majors: list) -> Optional[str]:
        """Fetch and process one feed into ``updates``; return an error message or None."""
        result = await self.client.fetch_feed(url)
        if isinstance(result, Err):
            logger.warning("%s feed fetch failed: %s", label, result.message)
            return result.message
        try:
            window_updates, window_majors = process(result.value, now)
        except Exception as exc:
            logger.error("Processing %s feed failed: %s", label, exc, exc_info=True)
            return str(exc)
        updates.update(window_updates)
        majors.extend(window_majors)
        return None

    async def refresh(self) -> FeedSnapshot:
        """One cycle over the day and week feeds."""
        now = self._clock()
        self._publish(error=None, is_loading_daily=True, is_loading_weekly=True)

        updates: dict = {}
        majors: list = []
        daily_error, weekly_error = await asyncio.gather(
            self._load_window("day", self.feeds["day"], _daily_windows, now, updates, majors),
            self._load_window("week", self.feeds["week"], _weekly_windows, now, updates, majors),
        )

        if daily_error is not None and weekly_error is not None:
            error = COMBINED_FAILURE_MESSAGE
        elif daily_error is not None:
            error = f"Daily data error: {daily_error}."
        elif weekly_error is not None:
            error = f"Weekly data error: {weekly_error}."
        else:
            error = None

        if daily_error is None or weekly_error is None:
            last, previous, between = consolidate_major_quakes(self._snapshot.last_major_quake, majors)
            updates.update(
                last_major_quake=last,
                previous_major_quake=previous,
                time_between_major=between,
                is_initial_load=False,
            )

        if error:
            logger.warning("Refresh cycle finished with error: %s", error)
        return self._publish(
            **updates,
            error=error,
            data_fetch_time=now,
            is_loading_daily=False,
            is_loading_weekly=False,
        )

    async def load_monthly(self) -> FeedSnapshot:
        """Fetch the month feed on demand and publish its windows."""
        now = self._clock()
        self._publish(is_loading_monthly=True, monthly_error=None)

        result = await self.client.fetch_feed(self.feeds["month"])
        if isinstance(result, Err):
            logger.warning("month feed fetch failed: %s", result.message)
            return self._publish(
                is_loading_monthly=False,
                has_attempted_monthly_load=True,
                monthly_error=f"Monthly Data Error: {result.message}.",
            )

        try:
            features = sanitize_features(result.value.get("features"))
            if not features:
                return self._publish(
                    is_loading_monthly=False,
                    has_attempted_monthly_load=True,
                    monthly_error=MONTHLY_UNAVAILABLE_MESSAGE,
                )
            updates = _monthly_windows(features, now)
            last, previous, between = consolidate_major_quakes(
                self._snapshot.last_major_quake, major_quakes(features),
            )
        except Exception as exc:
            logger.error("Processing month feed failed: %s", exc, exc_info=True)
            return self._publish(
                is_loading_monthly=False,
                has_attempted_monthly_load=True,
                monthly_error=f"Monthly Data Error: {exc}.",
            )

        return self._publish(
            **updates,
            last_major_quake=last,
            previous_major_quake=previous,
            time_between_major=between,
            is_loading_monthly=False,
            has_attempted_monthly_load=True,
        )
