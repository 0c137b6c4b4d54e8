"""Async HTTP client for USGS GeoJSON feeds: returns results, never raises."""

from __future__ import annotations

import logging
from datetime import date
from urllib.parse import quote

import httpx

from quake_cache.config import DEFAULT_HTTP_TIMEOUT_SECONDS
from quake_cache.result import Err, ErrorKind, Ok, Result

logger = logging.getLogger(__name__)

USER_AGENT = "EarthquakesLive/1.0 (+https://earthquakeslive.com)"

SUMMARY_URL = "https://earthquake.usgs.gov/earthquakes/feed/v1.0/summary"
FDSN_QUERY_URL = "https://earthquake.usgs.gov/fdsnws/event/1/query"

FEEDS = {
    "hour": f"{SUMMARY_URL}/all_hour.geojson",
    "day": f"{SUMMARY_URL}/all_day.geojson",
    "week": f"{SUMMARY_URL}/all_week.geojson",
    "month": f"{SUMMARY_URL}/all_month.geojson",
}


def fdsn_query_url(start: date | str, end: date | str, min_magnitude: float = 0) -> str:
    """FDSN event query covering a whole date range (all magnitudes by default)."""
    return (
        f"{FDSN_QUERY_URL}?format=geojson&starttime={start}&endtime={end}"
        f"&minmagnitude={min_magnitude:g}"
    )


def proxied_url(proxy_base: str, api_url: str) -> str:
    return f"{proxy_base.rstrip('/')}/api/usgs-proxy?apiUrl={quote(api_url, safe='')}"


def _error_message(resp: httpx.Response) -> str:
    """Prefer the `message` of a JSON error body (our proxy), else status + body excerpt."""
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    text = resp.text or ""
    suffix = f" - {text[:100]}" if text else ""
    return f"Error fetching data from USGS API: {resp.status_code}{suffix}"


class UsgsClient:
    """Async client for USGS summary feeds and the FDSN event service.

    With ``proxy_base`` set, every URL is routed through our own
    ``/api/usgs-proxy`` endpoint instead of hitting USGS directly.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        proxy_base: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.proxy_base = proxy_base
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> UsgsClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def fetch_feed(self, url: str) -> Result[dict]:
        """GET a feed URL and decode its JSON body.

        Network failures, non-2xx responses and undecodable bodies all come
        back as ``Err`` with a readable message and, where known, the status.
        """
        target = proxied_url(self.proxy_base, url) if self.proxy_base else url
        try:
            client = await self._get_client()
            resp = await client.get(target)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("Fetch of %s failed: %s", target, exc)
            return Err(ErrorKind.UPSTREAM, str(exc) or exc.__class__.__name__)

        if not resp.is_success:
            message = _error_message(resp)
            logger.warning("Fetch of %s returned %d", target, resp.status_code)
            return Err(ErrorKind.UPSTREAM, message, resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            logger.warning("Invalid JSON from %s: %s", target, exc)
            return Err(ErrorKind.PARSE, f"Invalid JSON in response: {exc}", resp.status_code)

        if not isinstance(data, dict):
            return Err(ErrorKind.PARSE, "Expected a JSON object", resp.status_code)

        return Ok(data)
