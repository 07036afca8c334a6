from __future__ import annotations

from fastapi import Request

from backend.app.api.rate_limits import SlidingWindowRateLimiter, client_key


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _request(*, forwarded_for: str | None = None, host: str = "198.51.100.4") -> Request:
    headers: list[tuple[bytes, bytes]] = []
    if forwarded_for is not None:
        headers.append((b"x-forwarded-for", forwarded_for.encode("latin-1")))
    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": "/channels/fetch",
            "headers": headers,
            "client": (host, 51000),
        }
    )


def test_client_key_ignores_forwarded_for_by_default() -> None:
    request = _request(forwarded_for="10.0.0.1")

    assert client_key(request) == "198.51.100.4"


def test_client_key_uses_proxy_appended_hop_when_trusted() -> None:
    request = _request(forwarded_for="10.0.0.1, 203.0.113.9")

    assert client_key(request, trust_forwarded_for=True) == "203.0.113.9"
    assert client_key(_request(forwarded_for=" "), trust_forwarded_for=True) == "198.51.100.4"


def test_limiter_refuses_after_max_requests_and_reopens_after_window() -> None:
    clock = _FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)

    first = limiter.take("fetch:a")
    limiter.take("fetch:a")
    refused = limiter.take("fetch:a")

    assert first.allowed is True
    assert first.remaining == 1
    assert refused.allowed is False
    assert refused.retry_after_seconds == 60

    clock.now += 61
    assert limiter.take("fetch:a").allowed is True


def test_limiter_forgets_idle_clients() -> None:
    clock = _FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=60, clock=clock)
    for index in range(50):
        limiter.take(f"fetch:10.0.0.{index}")
    assert limiter.tracked_keys == 50

    clock.now += 61
    limiter.take("fetch:198.51.100.4")

    assert limiter.tracked_keys == 1
