"""Live terminal dashboard backed by the feed monitor."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from quake_cache.clients.usgs_client import UsgsClient
from quake_cache.monitor import FeedMonitor, FeedSnapshot, event_time, magnitude

console = Console()

ALERT_STYLES = {"red": "bold red", "orange": "bold dark_orange", "yellow": "bold yellow"}


def _mag_color(mag: Optional[float]) -> str:
    if mag is None:
        return "dim"
    if mag >= 5.0:
        return "red"
    if mag >= 3.0:
        return "yellow"
    return "green"


def _fmt_time(ms: Optional[int]) -> str:
    if ms is None:
        return "-"
    return f"{datetime.fromtimestamp(ms / 1000, tz=timezone.utc):%Y-%m-%d %H:%M}"


def _fmt_quake(quake: Optional[dict]) -> str:
    if not quake:
        return "none"
    mag = magnitude(quake)
    place = quake.get("properties", {}).get("place") or "unknown location"
    return f"[{_mag_color(mag)}]M{mag if mag is not None else '?'}[/] {place} ({_fmt_time(event_time(quake))})"


def build_summary(snap: FeedSnapshot) -> Panel:
    lines = [
        f"Last hour: [bold]{len(snap.earthquakes_last_hour)}[/]"
        f"  (prior hour {len(snap.earthquakes_prior_hour)})",
        f"Last 24h: [bold]{len(snap.earthquakes_last_24_hours)}[/]"
        f"  (24-48h ago {len(snap.prev_24_hour_data)})",
        f"Last 7 days: [bold]{len(snap.earthquakes_last_7_days)}[/]",
        f"Last major: {_fmt_quake(snap.last_major_quake)}",
        f"Previous major: {_fmt_quake(snap.previous_major_quake)}",
    ]
    if snap.time_between_major is not None:
        lines.append(f"Gap between majors: {snap.time_between_major / 3_600_000:.1f} h")
    if snap.highest_recent_alert:
        style = ALERT_STYLES.get(snap.highest_recent_alert, "bold")
        lines.append(
            f"[{style}]Alert {snap.highest_recent_alert.upper()}[/]"
            f" on {len(snap.active_alert_triggering_quakes)} event(s)"
        )
    if snap.has_recent_tsunami_warning:
        lines.append(f"[bold red]Tsunami flag:[/] {_fmt_quake(snap.tsunami_triggering_quake)}")
    if snap.error:
        lines.append(f"[red]{snap.error}[/]")

    title = "Summary"
    if snap.last_updated:
        title += f" (feed generated {snap.last_updated})"
    return Panel("\n".join(lines), title=title, border_style="blue")


def build_table(snap: FeedSnapshot, limit: int) -> Table:
    table = Table(
        title=f"Earthquakes, last 24h ({datetime.now(timezone.utc):%H:%M:%S} UTC)",
        expand=True,
    )
    table.add_column("Mag", style="bold", width=6, justify="center")
    table.add_column("Place")
    table.add_column("Depth (km)", justify="right", width=12)
    table.add_column("Time (UTC)", width=18)
    table.add_column("Alert", width=8)

    quakes = sorted(snap.earthquakes_last_24_hours, key=lambda q: event_time(q) or 0, reverse=True)
    for q in quakes[:limit]:
        mag = magnitude(q)
        coords = (q.get("geometry") or {}).get("coordinates") or [None, None, None]
        depth = coords[2] if len(coords) > 2 else None
        alert = q.get("properties", {}).get("alert")
        table.add_row(
            f"[{_mag_color(mag)}]{mag:.1f}[/]" if mag is not None else "-",
            q.get("properties", {}).get("place") or "",
            f"{depth:.1f}" if isinstance(depth, (int, float)) else "-",
            _fmt_time(event_time(q)),
            f"[{ALERT_STYLES.get(alert, 'dim')}]{alert}[/]" if alert else "",
        )
    return table


async def _run(monitor: FeedMonitor, limit: int) -> None:
    layout = Layout()
    layout.split_column(
        Layout(name="stats", size=9),
        Layout(name="table"),
    )

    await monitor.start()
    try:
        with Live(layout, console=console, refresh_per_second=1, screen=True):
            while True:
                snap = monitor.snapshot
                layout["stats"].update(build_summary(snap))
                layout["table"].update(build_table(snap, limit))
                await asyncio.sleep(1)
    finally:
        await monitor.teardown()
        await monitor.client.close()


def run_dashboard(limit: int = 25, refresh: int = 300, proxy_base: Optional[str] = None) -> None:
    """Run a live-updating earthquake dashboard in the terminal."""
    monitor = FeedMonitor(client=UsgsClient(proxy_base=proxy_base), refresh_interval=refresh)
    try:
        asyncio.run(_run(monitor, limit))
    except KeyboardInterrupt:
        console.print("[dim]Dashboard stopped.[/]")
