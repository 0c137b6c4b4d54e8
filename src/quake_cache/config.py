"""Environment-driven configuration for the proxy, store and monitor."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 600
DEFAULT_HTTP_TIMEOUT_SECONDS = 15.0
DEFAULT_REFRESH_INTERVAL_SECONDS = 300
DEFAULT_PORT = 8080


def resolve_cache_ttl(raw: str | int | None) -> int:
    """Return the s-maxage to attach to proxied responses.

    A missing value silently selects the default. Anything that does not parse
    to a positive integer also selects the default, with one warning naming
    the offending value.
    """
    if raw is None or raw == "":
        return DEFAULT_CACHE_TTL_SECONDS
    try:
        ttl = int(str(raw).strip())
    except ValueError:
        ttl = 0
    if ttl <= 0:
        logger.warning(
            'Invalid WORKER_CACHE_DURATION_SECONDS value: "%s". Using default %ds.',
            raw, DEFAULT_CACHE_TTL_SECONDS,
        )
        return DEFAULT_CACHE_TTL_SECONDS
    return ttl


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


@dataclass
class Settings:
    """Runtime configuration, one instance per app or CLI invocation."""

    database_url: str | None = None
    cache_ttl_raw: str | None = None
    feed_url_override: str | None = None
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    port: int = DEFAULT_PORT

    @property
    def cache_ttl(self) -> int:
        return resolve_cache_ttl(self.cache_ttl_raw)

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            cache_ttl_raw=os.getenv("WORKER_CACHE_DURATION_SECONDS"),
            feed_url_override=os.getenv("USGS_FEED_URL") or None,
            http_timeout_seconds=_float_env("USGS_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS),
            port=int(_float_env("PORT", DEFAULT_PORT)),
        )
