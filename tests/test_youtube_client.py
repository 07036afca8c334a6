from __future__ import annotations

import threading
from email.message import Message
from http.client import IncompleteRead
from urllib.error import HTTPError, URLError

import pytest
from conftest import FakeYouTubeApi

from backend.app.services import youtube_client as youtube_client_module
from backend.app.services.quota_tracker import QuotaTracker
from backend.app.services.response_cache import ResponseCache
from backend.app.services.youtube_client import (
    NetworkError,
    NotFoundError,
    QuotaExceededError,
    RateLimitedError,
    Upstream4xxError,
    Upstream5xxError,
    YouTubeApiClient,
    is_short,
    parse_duration_seconds,
)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _error_payload(code: int, reason: str, message: str = "boom") -> dict[str, object]:
    return {"error": {"code": code, "message": message, "errors": [{"reason": reason}]}}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("PT1H2M10S", 3722),
        ("PT45S", 45),
        ("PT", 0),
        ("P1DT1S", 86_401),
        ("P0D", 0),
        ("garbage", 0),
        (None, 0),
    ],
)
def test_parse_duration_seconds(raw: object, expected: int) -> None:
    assert parse_duration_seconds(raw) == expected


def test_is_short_heuristic() -> None:
    assert is_short(duration_seconds=45, tags=[], category_id="10") is True
    assert is_short(duration_seconds=60, tags=[], category_id="10") is True
    assert is_short(duration_seconds=61, tags=[], category_id="10") is False
    assert is_short(duration_seconds=120, tags=["MyShorts"], category_id="10") is True
    assert is_short(duration_seconds=120, tags=[], category_id="23") is True
    assert is_short(duration_seconds=900, tags=["tutorial"], category_id=None) is False


def test_get_channel_info_maps_fields_and_defaults_counts(
    fake_youtube: FakeYouTubeApi,
    youtube_api_client: YouTubeApiClient,
) -> None:
    fake_youtube.add_channel("UC_full", title="Full")
    fake_youtube.add_channel("UC_bare", title="Bare", subscribers=None, videos=None, views=None)

    full = youtube_api_client.get_channel_info("UC_full")
    bare = youtube_api_client.get_channel_info("UC_bare")

    assert full.title == "Full"
    assert full.subscriber_count == 1200
    assert full.thumbnail_url == "https://img.example/high.jpg"
    assert full.banner_url == "https://img.example/banner.jpg"
    assert bare.subscriber_count == 0
    assert bare.video_count == 0
    assert bare.view_count == 0


def test_get_channel_info_missing_channel_raises_not_found(
    youtube_api_client: YouTubeApiClient,
) -> None:
    with pytest.raises(NotFoundError):
        youtube_api_client.get_channel_info("UC_missing")


def test_request_sends_api_key_and_parts_upstream(
    fake_youtube: FakeYouTubeApi,
    youtube_api_client: YouTubeApiClient,
) -> None:
    fake_youtube.add_channel("UC_1")

    youtube_api_client.get_channel_info("UC_1")

    assert fake_youtube.calls[0][1]["key"] == "test-api-key"
    assert fake_youtube.calls[0][1]["part"] == "snippet,statistics,brandingSettings"


def test_identical_requests_within_ttl_hit_network_once(
    fake_youtube: FakeYouTubeApi,
) -> None:
    clock = _FakeClock()
    client = YouTubeApiClient(
        "test-api-key",
        quota_tracker=QuotaTracker(),
        cache=ResponseCache(clock=clock),
    )
    fake_youtube.add_channel("UC_1")

    client.get_channel_info("UC_1")
    client.get_channel_info("UC_1")
    assert len(fake_youtube.endpoint_calls("channels")) == 1
    assert client.usage().cache_hits == 1

    clock.now += 1_801
    client.get_channel_info("UC_1")
    assert len(fake_youtube.endpoint_calls("channels")) == 2


def test_usage_counters_are_exact_across_worker_threads(
    fake_youtube: FakeYouTubeApi,
) -> None:
    client = YouTubeApiClient(
        "test-api-key",
        quota_tracker=QuotaTracker(),
        cache=ResponseCache(),
    )
    fake_youtube.add_channel("UC_1")
    client.get_channel_info("UC_1")

    def _hammer() -> None:
        for _ in range(500):
            client.get_channel_info("UC_1")

    threads = [threading.Thread(target=_hammer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    usage = client.usage()
    assert usage.network_requests == 1
    assert usage.quota_units_consumed == 1
    assert usage.cache_hits == 4_000


def test_search_costs_one_hundred_units(
    fake_youtube: FakeYouTubeApi,
    youtube_api_client: YouTubeApiClient,
) -> None:
    fake_youtube.set_pages("UC_1", [["v1", "v2"]])

    listing = youtube_api_client.list_channel_video_page("UC_1")

    assert [item.video_id for item in listing.items] == ["v1", "v2"]
    assert listing.next_page_token is None
    assert youtube_api_client.quota_tracker.snapshot().daily_used == 100
    assert fake_youtube.calls[0][1]["order"] == "date"


def test_get_video_details_parses_duration_and_short_flag(
    fake_youtube: FakeYouTubeApi,
    youtube_api_client: YouTubeApiClient,
) -> None:
    fake_youtube.add_video("short1", "UC_1", duration="PT30S")
    fake_youtube.add_video("long1", "UC_1", duration="PT12M", tags=["Tutorial"])
    fake_youtube.add_video("tagged", "UC_1", duration="PT3M", tags=["#Shorts"])

    records = {record.video_id: record for record in youtube_api_client.get_video_details(
        ["short1", "long1", "tagged"]
    )}

    assert records["short1"].duration_seconds == 30
    assert records["short1"].is_short is True
    assert records["long1"].duration_seconds == 720
    assert records["long1"].is_short is False
    assert records["long1"].tags == ("Tutorial",)
    assert records["tagged"].is_short is True
    assert records["long1"].view_count == 1000
    assert records["long1"].thumbnail_url == "https://img.example/long1.jpg"


@pytest.mark.parametrize(
    ("status", "payload", "expected_error"),
    [
        (403, _error_payload(403, "quotaExceeded"), RateLimitedError),
        (429, _error_payload(429, "rateLimitExceeded"), RateLimitedError),
        (403, _error_payload(403, "forbidden"), Upstream4xxError),
        (400, _error_payload(400, "badRequest"), Upstream4xxError),
        (404, _error_payload(404, "notFound"), NotFoundError),
        (500, _error_payload(500, "backendError"), Upstream5xxError),
        (503, None, Upstream5xxError),
    ],
)
def test_http_errors_map_to_taxonomy(
    fake_youtube: FakeYouTubeApi,
    youtube_api_client: YouTubeApiClient,
    status: int,
    payload: dict[str, object] | None,
    expected_error: type[Exception],
) -> None:
    fake_youtube.queued_outcomes.append((status, payload))

    with pytest.raises(expected_error) as exc_info:
        youtube_api_client.get_channel_info("UC_1")

    assert type(exc_info.value) is expected_error


def test_quota_exceeded_reason_is_retryable_with_long_retry_after(
    fake_youtube: FakeYouTubeApi,
    youtube_api_client: YouTubeApiClient,
) -> None:
    fake_youtube.queued_outcomes.append((403, _error_payload(403, "quotaExceeded")))

    with pytest.raises(RateLimitedError) as exc_info:
        youtube_api_client.get_channel_info("UC_1")

    assert exc_info.value.retryable is True
    assert exc_info.value.reason == "quotaExceeded"
    assert exc_info.value.retry_after_seconds == 24 * 60 * 60


def test_errors_are_not_cached(
    fake_youtube: FakeYouTubeApi,
    youtube_api_client: YouTubeApiClient,
) -> None:
    fake_youtube.add_channel("UC_1")
    fake_youtube.queued_outcomes.append((500, _error_payload(500, "backendError")))

    with pytest.raises(Upstream5xxError):
        youtube_api_client.get_channel_info("UC_1")
    channel = youtube_api_client.get_channel_info("UC_1")

    assert channel.channel_id == "UC_1"
    assert len(fake_youtube.endpoint_calls("channels")) == 2


def test_transport_failures_become_network_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def _failing_urlopen(*args: object, **kwargs: object) -> object:
        raise URLError("connection refused")

    monkeypatch.setattr(youtube_client_module, "urlopen", _failing_urlopen)
    client = YouTubeApiClient(
        "test-api-key",
        quota_tracker=QuotaTracker(),
        cache=ResponseCache(),
    )

    with pytest.raises(NetworkError) as exc_info:
        client.get_channel_info("UC_1")

    assert exc_info.value.retryable is True
    assert "connection refused" in str(exc_info.value)


class _TruncatedBody:
    def __enter__(self) -> _TruncatedBody:
        return self

    def __exit__(self, *args: object) -> None:
        return None

    def getcode(self) -> int:
        return 200

    def read(self, *args: object) -> bytes:
        raise IncompleteRead(b"{\"items\"", 100)

    def close(self) -> None:
        return None


def test_truncated_response_body_becomes_network_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _truncated_urlopen(request: object, **kwargs: object) -> _TruncatedBody:
        return _TruncatedBody()

    monkeypatch.setattr(youtube_client_module, "urlopen", _truncated_urlopen)
    client = YouTubeApiClient(
        "test-api-key",
        quota_tracker=QuotaTracker(),
        cache=ResponseCache(),
    )

    with pytest.raises(NetworkError) as exc_info:
        client.request("/channels", {"part": "snippet", "id": "UC_1"})

    assert exc_info.value.retryable is True


def test_unreadable_error_body_still_classifies_by_status(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _failing_urlopen(request: object, **kwargs: object) -> object:
        raise HTTPError(
            "https://example.test", 503, "Service Unavailable", Message(), _TruncatedBody()
        )

    monkeypatch.setattr(youtube_client_module, "urlopen", _failing_urlopen)
    client = YouTubeApiClient(
        "test-api-key",
        quota_tracker=QuotaTracker(),
        cache=ResponseCache(),
    )

    with pytest.raises(Upstream5xxError) as exc_info:
        client.request("/channels", {"part": "snippet", "id": "UC_1"})

    assert exc_info.value.status_code == 503


def test_local_quota_refusal_waits_once_then_raises(
    fake_youtube: FakeYouTubeApi,
    sleeps: list[float],
) -> None:
    client = YouTubeApiClient(
        "test-api-key",
        quota_tracker=QuotaTracker(daily_limit=150, per_minute_limit=100),
        cache=ResponseCache(),
    )
    fake_youtube.set_pages("UC_1", [["v1"]])
    client.list_channel_video_page("UC_1")

    with pytest.raises(QuotaExceededError) as exc_info:
        client.list_channel_video_page("UC_1", page_token="other")

    assert sleeps == [5.0]
    assert exc_info.value.scope == "daily_quota_exhausted"
    assert len(fake_youtube.endpoint_calls("search")) == 1


def test_local_quota_refusal_retries_once_and_succeeds_when_window_frees(
    fake_youtube: FakeYouTubeApi,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    clock = _FakeClock()
    client = YouTubeApiClient(
        "test-api-key",
        quota_tracker=QuotaTracker(per_minute_limit=1, clock=clock),
        cache=ResponseCache(),
    )
    fake_youtube.add_channel("UC_1")
    fake_youtube.add_channel("UC_2")

    def _advance(seconds: float) -> None:
        clock.now += 61

    monkeypatch.setattr("backend.app.services.youtube_client.time.sleep", _advance)

    client.get_channel_info("UC_1")
    channel = client.get_channel_info("UC_2")

    assert channel.channel_id == "UC_2"
    assert len(fake_youtube.endpoint_calls("channels")) == 2


def test_client_rejects_empty_api_key() -> None:
    with pytest.raises(ValueError):
        YouTubeApiClient(" ", quota_tracker=QuotaTracker(), cache=ResponseCache())
