from __future__ import annotations

import json
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from threading import Lock
from typing import Any

LIST_TTL_SECONDS = 300
CHANNEL_TTL_SECONDS = 1_800
DEFAULT_TTL_SECONDS = 600
_LIST_ENDPOINTS: tuple[str, ...] = ("/search", "/videos")
_CHANNEL_ENDPOINTS: tuple[str, ...] = ("/channels",)
# Never part of a cache key.
_EXCLUDED_PARAMS: frozenset[str] = frozenset({"key"})


@dataclass(frozen=True)
class CacheStats:
    size: int
    max_entries: int
    hits: int
    misses: int


@dataclass(frozen=True)
class CacheTtlPolicy:
    list_ttl_seconds: int = LIST_TTL_SECONDS
    channel_ttl_seconds: int = CHANNEL_TTL_SECONDS
    default_ttl_seconds: int = DEFAULT_TTL_SECONDS

    def ttl_for(self, endpoint: str) -> int:
        normalized = "/" + endpoint.strip().lstrip("/")
        if normalized.startswith(_LIST_ENDPOINTS):
            return self.list_ttl_seconds
        if normalized.startswith(_CHANNEL_ENDPOINTS):
            return self.channel_ttl_seconds
        return self.default_ttl_seconds


def build_cache_key(endpoint: str, params: Mapping[str, Any]) -> str:
    normalized_endpoint = "/" + endpoint.strip().lstrip("/")
    cacheable = {
        str(name): value
        for name, value in params.items()
        if name not in _EXCLUDED_PARAMS and value is not None
    }
    return f"{normalized_endpoint}?{json.dumps(cacheable, sort_keys=True, default=str)}"


class ResponseCache:
    """In-memory TTL memoization of API payloads.

    Expired entries are dropped lazily on read; when the cache is full the
    expired entries go first, then the least recently written.
    """

    def __init__(
        self,
        *,
        max_entries: int = 2_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._lock = Lock()
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            expires_at, value = entry
            if expires_at <= now:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        now = self._clock()
        with self._lock:
            self._entries.pop(key, None)
            if len(self._entries) >= self._max_entries:
                self._evict(now)
            self._entries[key] = (now + ttl_seconds, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                max_entries=self._max_entries,
                hits=self._hits,
                misses=self._misses,
            )

    def _evict(self, now: float) -> None:
        expired_keys = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired_keys:
            del self._entries[key]
        while len(self._entries) >= self._max_entries:
            self._entries.popitem(last=False)
