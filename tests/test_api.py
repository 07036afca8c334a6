from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, cast

import pytest
from conftest import FakeYouTubeApi
from fastapi.testclient import TestClient

from backend.app.dependencies import get_data_repository, get_job_queue, reset_cached_dependencies
from backend.app.main import create_app
from backend.app.models.youtube_records import ChannelRecord, VideoRecord
from backend.app.services.youtube_client import NotFoundError, QuotaExceededError


def _seed_channel_with_videos() -> None:
    repository = get_data_repository()
    repository.upsert_channel(ChannelRecord(channel_id="UC_1", title="Channel One"))
    repository.upsert_videos(
        [
            VideoRecord(
                video_id="short",
                channel_id="UC_1",
                title="Quick tip",
                published_at="2026-02-01T00:00:00Z",
                duration_seconds=30,
                view_count=1_000,
                like_count=90,
                comment_count=10,
                is_short=True,
            ),
            VideoRecord(
                video_id="long",
                channel_id="UC_1",
                title="Deep dive",
                published_at="2026-01-01T00:00:00Z",
                duration_seconds=1_200,
                view_count=0,
                tags=("tutorial",),
            ),
        ]
    )


def test_health_reports_quota_and_cache(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["quota"]["dailyLimit"] == 10_000
    assert body["quota"]["dailyRemaining"] == 10_000
    assert body["cache"]["size"] == 0
    assert body["apiUsage"]["networkRequests"] == 0
    assert response.headers["X-Request-ID"]


def test_fetch_channel_enqueues_pending_job(client: TestClient) -> None:
    response = client.post("/channels/fetch", json={"channelId": "UC_1"})

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    assert body["channelId"] == "UC_1"
    assert body["jobType"] == "channel_fetch"

    job_response = client.get(f"/jobs/{body['jobId']}")
    assert job_response.status_code == 200
    job = job_response.json()["job"]
    assert job["status"] == "pending"
    assert job["progress"] == 0
    assert job["attempts"] == 0


def test_fetch_channel_requires_channel_id(client: TestClient) -> None:
    response = client.post("/channels/fetch", json={"channelId": "  "})

    assert response.status_code == 400
    assert response.json()["detail"] == "Channel ID is required"


def test_fetch_videos_accepts_optional_body(client: TestClient) -> None:
    with_body = client.post("/channels/UC_1/videos/fetch", json={"maxPages": 2, "priority": 3})
    without_body = client.post("/channels/UC_1/videos/fetch")
    invalid = client.post("/channels/UC_1/videos/fetch", json={"maxPages": 0})

    assert with_body.status_code == 202
    assert without_body.status_code == 202
    assert invalid.status_code == 400

    job = client.get(f"/jobs/{with_body.json()['jobId']}").json()["job"]
    assert job["options"] == {"max_pages": 2}
    assert job["priority"] == 3
    assert job["jobType"] == "video_fetch"


def test_fetch_job_runs_end_to_end(client: TestClient, fake_youtube: FakeYouTubeApi) -> None:
    fake_youtube.add_channel("UC_1", title="End To End")
    accepted = client.post("/channels/fetch", json={"channelId": "UC_1"}).json()

    get_job_queue().run_next()

    job = client.get(f"/jobs/{accepted['jobId']}").json()["job"]
    assert job["status"] == "completed"
    assert job["progress"] == 100
    channel = client.get("/channels/UC_1").json()["channel"]
    assert channel["title"] == "End To End"
    assert channel["subscriberCount"] == 1200


def test_unknown_job_and_channel_return_404(client: TestClient) -> None:
    assert client.get("/jobs/job_missing").status_code == 404
    assert client.get("/channels/UC_missing").status_code == 404
    assert client.get("/channels/UC_missing/videos").status_code == 404
    assert client.get("/channels/UC_missing/analytics").status_code == 404
    assert client.post("/channels/UC_missing/calculate-shorts").status_code == 404
    assert client.get("/videos/missing").status_code == 404


def test_list_channel_videos_filters_and_adds_metrics(client: TestClient) -> None:
    _seed_channel_with_videos()

    everything = client.get("/channels/UC_1/videos").json()
    shorts_only = client.get("/channels/UC_1/videos", params={"includeShorts": "true"}).json()
    no_shorts = client.get("/channels/UC_1/videos", params={"includeShorts": "false"}).json()

    assert [video["videoId"] for video in everything["videos"]] == ["short", "long"]
    assert everything["total"] == 2
    assert [video["videoId"] for video in shorts_only["videos"]] == ["short"]
    assert [video["videoId"] for video in no_shorts["videos"]] == ["long"]

    short_video = everything["videos"][0]
    long_video = everything["videos"][1]
    assert short_video["engagementRate"] == 10.0
    assert short_video["lengthCategory"] == "short"
    assert long_video["engagementRate"] == 0.0
    assert long_video["lengthCategory"] == "extended"
    assert long_video["tags"] == ["tutorial"]


def test_list_channel_videos_paginates(client: TestClient) -> None:
    _seed_channel_with_videos()

    page = client.get("/channels/UC_1/videos", params={"limit": 1, "offset": 1}).json()

    assert page["count"] == 1
    assert page["total"] == 2
    assert page["videos"][0]["videoId"] == "long"


def test_trending_videos_only_include_recent_uploads(client: TestClient) -> None:
    _seed_channel_with_videos()
    two_days_ago = (datetime.now(UTC) - timedelta(days=2)).isoformat()
    get_data_repository().upsert_video(
        VideoRecord(
            video_id="fresh",
            channel_id="UC_1",
            title="This week",
            published_at=two_days_ago,
            duration_seconds=240,
            view_count=200,
            like_count=20,
        )
    )

    trending = client.get("/channels/UC_1/videos/trending").json()

    assert trending["days"] == 7
    assert trending["count"] == 1
    assert trending["videos"][0]["videoId"] == "fresh"
    assert trending["videos"][0]["engagementRate"] == 10.0
    assert client.get("/channels/UC_1/videos/trending", params={"days": 0}).status_code == 422
    assert client.get("/channels/UC_missing/videos/trending").status_code == 404


def test_analytics_computed_on_demand_and_recalculated(client: TestClient) -> None:
    _seed_channel_with_videos()

    analytics = client.get("/channels/UC_1/analytics").json()["analytics"]
    assert analytics["totalVideos"] == 2
    assert analytics["totalShorts"] == 1
    assert analytics["shortsPercentage"] == 50.0

    get_data_repository().upsert_video(
        VideoRecord(
            video_id="another_short",
            channel_id="UC_1",
            title="Another short",
            duration_seconds=20,
            is_short=True,
        )
    )
    recalculated = client.post("/channels/UC_1/calculate-shorts").json()["analytics"]
    assert recalculated["totalVideos"] == 3
    assert recalculated["shortsPercentage"] == 66.67


def test_get_video_and_list_channels(client: TestClient) -> None:
    _seed_channel_with_videos()

    video = client.get("/videos/short").json()["video"]
    channels = client.get("/channels").json()

    assert video["isShort"] is True
    assert video["durationSeconds"] == 30
    assert channels["count"] == 1
    assert channels["channels"][0]["channelId"] == "UC_1"


def test_list_jobs_filters_by_status(client: TestClient) -> None:
    client.post("/channels/fetch", json={"channelId": "UC_1"})

    pending = client.get("/jobs", params={"status": "pending"}).json()
    completed = client.get("/jobs", params={"status": "completed"}).json()
    invalid = client.get("/jobs", params={"status": "bogus"})

    assert pending["count"] == 1
    assert completed["count"] == 0
    assert invalid.status_code == 400


def test_fetch_routes_rate_limit_ignores_forwarded_for_header(client: TestClient) -> None:
    statuses = [
        client.post(
            "/channels/fetch",
            json={"channelId": f"UC_{index}"},
            headers={"X-Forwarded-For": f"10.0.0.{index}"},
        ).status_code
        for index in range(20)
    ]

    assert statuses[:5] == [202] * 5
    assert statuses[5:] == [429] * 15
    limited = client.post("/channels/fetch", json={"channelId": "UC_x"})
    assert int(limited.headers["Retry-After"]) >= 1
    assert limited.headers["X-RateLimit-Remaining"] == "0"


def test_upstream_errors_map_to_http_statuses(client: TestClient) -> None:
    app = cast(Any, client.app)

    def _quota() -> None:
        raise QuotaExceededError("Rate limit exceeded.", retry_after_seconds=7)

    def _missing() -> None:
        raise NotFoundError("Channel not found: UC_1")

    app.add_api_route("/_test/quota", _quota, methods=["GET"])
    app.add_api_route("/_test/missing", _missing, methods=["GET"])

    quota_response = client.get("/_test/quota")
    missing_response = client.get("/_test/missing")

    assert quota_response.status_code == 503
    assert quota_response.headers["Retry-After"] == "7"
    assert quota_response.json()["error_type"] == "QuotaExceededError"
    assert missing_response.status_code == 404


def test_create_app_refuses_to_start_without_api_key(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CHANNEL_INSIGHTS_DATA_DIR", str(tmp_path))
    reset_cached_dependencies()

    with pytest.raises(ValueError, match="YOUTUBE_API_KEY"):
        create_app()

    reset_cached_dependencies()
