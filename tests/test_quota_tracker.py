from __future__ import annotations

import threading

from backend.app.services.quota_tracker import QuotaTracker


class _FakeClock:
    def __init__(self) -> None:
        self.now = 10_000.0

    def __call__(self) -> float:
        return self.now


def test_consumes_units_until_daily_budget_is_spent() -> None:
    tracker = QuotaTracker(daily_limit=250, per_minute_limit=100, clock=_FakeClock())

    assert tracker.try_consume(100).allowed is True
    assert tracker.try_consume(100).allowed is True
    refused = tracker.try_consume(100)

    assert refused.allowed is False
    assert refused.reason == "daily_quota_exhausted"
    assert refused.daily_remaining == 50
    assert tracker.snapshot().daily_used == 200


def test_refused_call_consumes_nothing() -> None:
    clock = _FakeClock()
    tracker = QuotaTracker(daily_limit=10, per_minute_limit=2, clock=clock)

    tracker.try_consume(1)
    tracker.try_consume(1)
    refused = tracker.try_consume(1)
    snapshot = tracker.snapshot()

    assert refused.allowed is False
    assert refused.reason == "minute_rate_exhausted"
    assert refused.retry_after_seconds == 60
    assert snapshot.daily_used == 2
    assert snapshot.minute_used == 2


def test_minute_window_rolls_over() -> None:
    clock = _FakeClock()
    tracker = QuotaTracker(daily_limit=1_000, per_minute_limit=1, clock=clock)

    assert tracker.try_consume(1).allowed is True
    assert tracker.try_consume(1).allowed is False

    clock.now += 60
    assert tracker.try_consume(1).allowed is True


def test_daily_window_rolls_over_after_twenty_four_hours() -> None:
    clock = _FakeClock()
    tracker = QuotaTracker(daily_limit=100, per_minute_limit=100, clock=clock)

    assert tracker.try_consume(100).allowed is True
    refused = tracker.try_consume(1)
    assert refused.allowed is False
    assert refused.retry_after_seconds == 24 * 60 * 60

    clock.now += 24 * 60 * 60
    assert tracker.try_consume(100).allowed is True


def test_cost_above_daily_limit_is_never_admitted() -> None:
    tracker = QuotaTracker(daily_limit=50, per_minute_limit=100, clock=_FakeClock())

    decision = tracker.try_consume(51)

    assert decision.allowed is False
    assert tracker.snapshot().daily_used == 0


def test_concurrent_consumers_never_exceed_budget() -> None:
    tracker = QuotaTracker(daily_limit=500, per_minute_limit=10_000)
    admitted: list[bool] = []
    lock = threading.Lock()

    def _worker() -> None:
        for _ in range(50):
            decision = tracker.try_consume(1)
            with lock:
                admitted.append(decision.allowed)

    threads = [threading.Thread(target=_worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(admitted) == 500
    assert tracker.snapshot().daily_remaining == 0
