"""Response cache keyed by the full proxied request URL."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

_S_MAXAGE_RE = re.compile(r"s-maxage=(\d+)")


@dataclass(frozen=True)
class CachedResponse:
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def s_maxage(self) -> Optional[int]:
        for name, value in self.headers.items():
            if name.lower() == "cache-control":
                match = _S_MAXAGE_RE.search(value)
                if match:
                    return int(match.group(1))
        return None


class ResponseCache(Protocol):
    async def match(self, key: str) -> Optional[CachedResponse]: ...

    async def put(self, key: str, response: CachedResponse) -> None: ...


class MemoryResponseCache:
    """Process-local cache; each entry lives for its own ``s-maxage``.

    Responses without ``s-maxage`` are kept for ``default_ttl`` seconds.
    Safe to share across request threads.
    """

    def __init__(self, default_ttl: int = 600, max_entries: int = 512, clock=time.monotonic):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[CachedResponse, float]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    async def match(self, key: str) -> Optional[CachedResponse]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            response, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return response

    async def put(self, key: str, response: CachedResponse) -> None:
        ttl = response.s_maxage
        if ttl is None:
            ttl = self.default_ttl
        with self._lock:
            self._entries.pop(key, None)
            if len(self._entries) >= self.max_entries:
                # dicts keep insertion order, so the first key is the oldest write
                oldest = next(iter(self._entries))
                del self._entries[oldest]
            self._entries[key] = (response, self._clock() + ttl)
        logger.debug("Cached %s for %ds", key, ttl)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
