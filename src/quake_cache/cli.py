"""CLI entrypoint for usgs-quake-cache."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime, timezone

import click
from rich.console import Console
from rich.table import Table

from quake_cache.clients.usgs_client import FEEDS, UsgsClient
from quake_cache.config import Settings
from quake_cache.db import store_from_dsn
from quake_cache.monitor import event_time, magnitude, sanitize_features
from quake_cache.result import Err

console = Console()


def _mag_style(mag: float | None) -> str:
    if mag is None:
        return "dim"
    return "red" if mag >= 5.0 else "yellow" if mag >= 3.0 else "green"


def _require_store(settings: Settings):
    store = store_from_dsn(settings.database_url)
    if store is None:
        console.print("[red]DATABASE_URL is not set.[/]")
        sys.exit(1)
    return store


async def _with_client(settings: Settings, work):
    async with UsgsClient(timeout_seconds=settings.http_timeout_seconds) as client:
        return await work(client)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level.")
def cli(verbose: bool):
    """USGS Quake Cache: caching USGS proxy, store and feed monitor."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


@cli.command()
@click.option("--period", default="hour", type=click.Choice(sorted(FEEDS)))
@click.option("--min-mag", default=0.0, help="Minimum magnitude filter.")
@click.option("--limit", default=20, help="Max results to display.")
def recent(period: str, min_mag: float, limit: int):
    """Show recent earthquakes straight from a USGS summary feed."""
    settings = Settings.from_env()
    result = asyncio.run(_with_client(settings, lambda c: c.fetch_feed(FEEDS[period])))
    if isinstance(result, Err):
        console.print(f"[red]{result.message}[/]")
        sys.exit(1)

    quakes = [
        q for q in sanitize_features(result.value.get("features"))
        if (magnitude(q) or 0) >= min_mag
    ]
    quakes.sort(key=lambda q: event_time(q) or 0, reverse=True)

    table = Table(title=f"Recent Earthquakes ({period})")
    table.add_column("Mag", style="bold", width=5)
    table.add_column("Place")
    table.add_column("Depth (km)", justify="right")
    table.add_column("Time (UTC)")

    for q in quakes[:limit]:
        mag = magnitude(q)
        coords = q["geometry"].get("coordinates") or [None, None, None]
        depth = coords[2] if len(coords) > 2 else None
        t = event_time(q)
        table.add_row(
            f"[{_mag_style(mag)}]{mag:.1f}[/]" if mag is not None else "-",
            q["properties"].get("place") or "",
            f"{depth:.1f}" if isinstance(depth, (int, float)) else "-",
            f"{datetime.fromtimestamp(t / 1000, tz=timezone.utc):%Y-%m-%d %H:%M}" if t else "-",
        )

    console.print(table)


@cli.command("init-db")
def init_db():
    """Create the earthquake_events and cluster_definitions tables."""
    store = _require_store(Settings.from_env())
    store.init_schema()
    console.print("[green]Schema ready.[/]")


@cli.command()
@click.option("--start", "start_date", required=True, help="Start date, YYYY-MM-DD.")
@click.option("--end", "end_date", required=True, help="End date, YYYY-MM-DD.")
def backfill(start_date: str, end_date: str):
    """Fetch every event in a date range from the FDSN service and upsert it."""
    from quake_cache.backfill import batch_fetch

    settings = Settings.from_env()
    store = _require_store(settings)
    status, body = asyncio.run(
        _with_client(settings, lambda c: batch_fetch(c, store, start_date, end_date))
    )
    color = "green" if status == 200 else "red"
    console.print(f"[{color}]{body['message']}[/]")
    if "fetched" in body:
        console.print(f"fetched {body['fetched']}, upserted {body['upserted']}, errors {body['errors']}")
    if status != 200:
        sys.exit(1)


@cli.command()
@click.option("--feed", default=None, help="Feed URL (defaults to USGS_FEED_URL or the hourly feed).")
def ingest(feed: str | None):
    """Run one scheduled ingest of a summary feed into the store."""
    from quake_cache.backfill import ingest_feed

    settings = Settings.from_env()
    store = _require_store(settings)
    status, body = asyncio.run(
        _with_client(settings, lambda c: ingest_feed(c, store, feed or settings.feed_url_override))
    )
    click.echo(f"{status} {body}")
    if status != 200:
        sys.exit(1)


@cli.command()
@click.option("--days", default=30, help="Look back this many days.")
@click.option("--limit", default=50, help="Max results to display.")
def significant(days: int, limit: int):
    """List stored events that are significant (M4.5+ or with faulting products)."""
    from quake_cache.models import now_ms

    store = _require_store(Settings.from_env())
    records = store.list_significant(since_ms=now_ms() - days * 86_400_000)

    table = Table(title=f"Significant earthquakes, last {days} days ({len(records)})")
    table.add_column("Mag", style="bold", width=5)
    table.add_column("Place")
    table.add_column("Time (UTC)")
    table.add_column("ID", style="dim")
    for r in records[:limit]:
        table.add_row(
            f"[{_mag_style(r.magnitude)}]{r.magnitude:.1f}[/]",
            r.place,
            f"{datetime.fromtimestamp(r.event_time / 1000, tz=timezone.utc):%Y-%m-%d %H:%M}",
            r.id,
        )
    console.print(table)


@cli.command()
@click.option("--limit", default=25, help="Max rows in the 24h table.")
@click.option("--refresh", default=300, help="Feed refresh interval in seconds.")
@click.option("--proxy", "proxy_base", default=None, help="Route feed requests through this proxy base URL.")
def monitor(limit: int, refresh: int, proxy_base: str | None):
    """Live multi-window dashboard (day/week feeds, major quakes, alerts)."""
    from quake_cache.dashboard import run_dashboard
    run_dashboard(limit=limit, refresh=refresh, proxy_base=proxy_base)


@cli.command()
@click.option("--port", default=None, type=int, help="Port (defaults to PORT or 8080).")
def serve(port: int | None):
    """Run the HTTP proxy and API with Flask's built-in server."""
    from quake_cache.web import create_app

    logging.getLogger().setLevel(logging.INFO)
    settings = Settings.from_env()
    app = create_app(settings)
    app.run(host="0.0.0.0", port=port or settings.port, debug=False)
