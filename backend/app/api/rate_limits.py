from __future__ import annotations

import logging
import math
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from time import time

from fastapi import HTTPException, Request

LOGGER = logging.getLogger("channel_insights.api.rate_limits")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_after_seconds: int


class SlidingWindowRateLimiter:
    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: int,
        trust_forwarded_for: bool = False,
        clock: Callable[[], float] = time,
    ) -> None:
        self._max_requests = max(1, max_requests)
        self._window_seconds = max(1, window_seconds)
        self._trust_forwarded_for = trust_forwarded_for
        self._clock = clock
        self._lock = Lock()
        self._buckets: dict[str, deque[float]] = {}
        self._last_sweep = clock()

    @property
    def trust_forwarded_for(self) -> bool:
        return self._trust_forwarded_for

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._buckets)

    def take(self, key: str) -> RateLimitDecision:
        now = self._clock()
        cutoff = now - self._window_seconds

        with self._lock:
            if now - self._last_sweep >= self._window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now

            bucket = self._buckets.setdefault(key, deque())
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()

            if len(bucket) >= self._max_requests:
                retry_after_seconds = max(
                    1,
                    math.ceil((bucket[0] + self._window_seconds) - now),
                )
                return RateLimitDecision(
                    allowed=False,
                    limit=self._max_requests,
                    remaining=0,
                    retry_after_seconds=retry_after_seconds,
                    reset_after_seconds=retry_after_seconds,
                )

            bucket.append(now)
            remaining = max(self._max_requests - len(bucket), 0)
            reset_after_seconds = max(
                1,
                math.ceil((bucket[0] + self._window_seconds) - now),
            )
            return RateLimitDecision(
                allowed=True,
                limit=self._max_requests,
                remaining=remaining,
                retry_after_seconds=0,
                reset_after_seconds=reset_after_seconds,
            )

    def _sweep(self, cutoff: float) -> None:
        stale_keys = [
            key for key, bucket in self._buckets.items() if not bucket or bucket[-1] <= cutoff
        ]
        for key in stale_keys:
            del self._buckets[key]


def client_key(request: Request, *, trust_forwarded_for: bool = False) -> str:
    """Peer address, or the hop appended by a trusted reverse proxy.

    Only the last `X-Forwarded-For` entry is written by our own proxy; anything
    before it is client supplied and never used as a key.
    """
    if trust_forwarded_for:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            last_hop = forwarded_for.rsplit(",", 1)[-1].strip()
            if last_hop:
                return last_hop
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def enforce_rate_limit(
    limiter: SlidingWindowRateLimiter,
    request: Request,
    *,
    scope: str,
) -> RateLimitDecision:
    key = client_key(request, trust_forwarded_for=limiter.trust_forwarded_for)
    decision = limiter.take(f"{scope}:{key}")
    if not decision.allowed:
        LOGGER.info(
            "route rate limit exceeded scope=%s client=%s retry_after=%s",
            scope,
            key,
            decision.retry_after_seconds,
        )
        raise HTTPException(
            status_code=429,
            detail="Too many requests, please try again later.",
            headers={
                "Retry-After": str(decision.retry_after_seconds),
                "X-RateLimit-Limit": str(decision.limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    return decision
