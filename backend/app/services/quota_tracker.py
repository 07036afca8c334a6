from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

DAY_WINDOW_SECONDS = 24 * 60 * 60
MINUTE_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    cost: int
    daily_remaining: int
    minute_remaining: int
    retry_after_seconds: int
    reason: str | None = None


@dataclass(frozen=True)
class QuotaSnapshot:
    daily_limit: int
    daily_used: int
    daily_remaining: int
    minute_limit: int
    minute_used: int
    minute_remaining: int


class QuotaTracker:
    """Process-wide budget for YouTube Data API usage.

    Two rolling windows are enforced together: quota units per 24 hours and
    requests per minute. A call is admitted only when both windows have room,
    and a refused call consumes nothing from either.
    """

    def __init__(
        self,
        *,
        daily_limit: int = 10_000,
        per_minute_limit: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._daily_limit = max(1, daily_limit)
        self._per_minute_limit = max(1, per_minute_limit)
        self._clock = clock
        self._lock = Lock()
        self._daily_entries: deque[tuple[float, int]] = deque()
        self._daily_used = 0
        self._minute_entries: deque[float] = deque()

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    @property
    def per_minute_limit(self) -> int:
        return self._per_minute_limit

    def try_consume(self, cost: int = 1) -> QuotaDecision:
        units = max(0, cost)
        now = self._clock()

        with self._lock:
            self._expire(now)
            daily_remaining = self._daily_limit - self._daily_used
            minute_remaining = self._per_minute_limit - len(self._minute_entries)

            if units > daily_remaining:
                return QuotaDecision(
                    allowed=False,
                    cost=units,
                    daily_remaining=daily_remaining,
                    minute_remaining=minute_remaining,
                    retry_after_seconds=self._daily_retry_after(now, units),
                    reason="daily_quota_exhausted",
                )
            if minute_remaining <= 0:
                return QuotaDecision(
                    allowed=False,
                    cost=units,
                    daily_remaining=daily_remaining,
                    minute_remaining=0,
                    retry_after_seconds=max(
                        1,
                        math.ceil(self._minute_entries[0] + MINUTE_WINDOW_SECONDS - now),
                    ),
                    reason="minute_rate_exhausted",
                )

            if units > 0:
                self._daily_entries.append((now, units))
                self._daily_used += units
            self._minute_entries.append(now)
            return QuotaDecision(
                allowed=True,
                cost=units,
                daily_remaining=daily_remaining - units,
                minute_remaining=minute_remaining - 1,
                retry_after_seconds=0,
            )

    def snapshot(self) -> QuotaSnapshot:
        now = self._clock()
        with self._lock:
            self._expire(now)
            minute_used = len(self._minute_entries)
            return QuotaSnapshot(
                daily_limit=self._daily_limit,
                daily_used=self._daily_used,
                daily_remaining=self._daily_limit - self._daily_used,
                minute_limit=self._per_minute_limit,
                minute_used=minute_used,
                minute_remaining=self._per_minute_limit - minute_used,
            )

    def _expire(self, now: float) -> None:
        daily_cutoff = now - DAY_WINDOW_SECONDS
        while self._daily_entries and self._daily_entries[0][0] <= daily_cutoff:
            _, units = self._daily_entries.popleft()
            self._daily_used -= units

        minute_cutoff = now - MINUTE_WINDOW_SECONDS
        while self._minute_entries and self._minute_entries[0] <= minute_cutoff:
            self._minute_entries.popleft()

    def _daily_retry_after(self, now: float, units: int) -> int:
        if units > self._daily_limit:
            return DAY_WINDOW_SECONDS
        # Walk the oldest entries until enough units would have expired.
        needed = units - (self._daily_limit - self._daily_used)
        released = 0
        for recorded_at, entry_units in self._daily_entries:
            released += entry_units
            if released >= needed:
                return max(1, math.ceil(recorded_at + DAY_WINDOW_SECONDS - now))
        return DAY_WINDOW_SECONDS
