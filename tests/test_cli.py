"""Tests for the CLI and the dashboard renderables."""

from __future__ import annotations

import httpx
import respx
from click.testing import CliRunner
from rich.console import Console

from conftest import HOUR_MS, NOW_MS, feed, make_feature
from quake_cache.cli import cli
from quake_cache.clients.usgs_client import FEEDS
from quake_cache.dashboard import build_summary, build_table
from quake_cache.monitor import FeedSnapshot


def _render(renderable) -> str:
    console = Console(width=140, record=True)
    console.print(renderable)
    return console.export_text()


class TestCli:
    def test_recent(self):
        payload = feed(
            make_feature("a", mag=4.7, place="Off the coast of Chile"),
            make_feature("b", mag=1.2, place="Near Ridgecrest, CA"),
        )
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(FEEDS["day"]).mock(return_value=httpx.Response(200, json=payload))
            result = CliRunner().invoke(cli, ["recent", "--period", "day", "--min-mag", "2"])
        assert result.exit_code == 0
        assert "Off the coast of Chile" in result.output
        assert "Ridgecrest" not in result.output

    def test_recent_upstream_error(self):
        with respx.mock(assert_all_called=False) as respx_mock:
            respx_mock.get(FEEDS["hour"]).mock(return_value=httpx.Response(500, text="oops"))
            result = CliRunner().invoke(cli, ["recent"])
        assert result.exit_code == 1

    def test_init_db_requires_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        result = CliRunner().invoke(cli, ["init-db"])
        assert result.exit_code == 1
        assert "DATABASE_URL" in result.output

    def test_backfill_requires_dates(self):
        result = CliRunner().invoke(cli, ["backfill", "--start", "2024-01-01"])
        assert result.exit_code != 0


class TestDashboard:
    def test_summary_shows_majors_and_alerts(self):
        snap = FeedSnapshot(
            earthquakes_last_24_hours=[make_feature("a")],
            last_major_quake=make_feature("m1", mag=6.1, place="Kermadec Islands"),
            previous_major_quake=make_feature("m0", mag=5.0, place="Fiji region"),
            time_between_major=3 * HOUR_MS,
            highest_recent_alert="orange",
            active_alert_triggering_quakes=[make_feature("m1")],
            error="Weekly data error: boom.",
        )
        text = _render(build_summary(snap))
        assert "Kermadec Islands" in text
        assert "Fiji region" in text
        assert "3.0 h" in text
        assert "ORANGE" in text
        assert "Weekly data error: boom." in text

    def test_table_newest_first(self):
        snap = FeedSnapshot(earthquakes_last_24_hours=[
            make_feature("old", place="Older place", time_ms=NOW_MS - 5 * HOUR_MS),
            make_feature("new", place="Newer place", time_ms=NOW_MS - HOUR_MS),
        ])
        text = _render(build_table(snap, limit=10))
        assert text.index("Newer place") < text.index("Older place")
