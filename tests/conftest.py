from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlsplit

import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import reset_cached_dependencies
from backend.app.main import create_app
from backend.app.repositories.database import Database
from backend.app.services import youtube_client as youtube_client_module
from backend.app.services.quota_tracker import QuotaTracker
from backend.app.services.response_cache import ResponseCache
from backend.app.services.youtube_client import YouTubeApiClient

FetchOutcome = tuple[int, dict[str, Any] | None] | Exception


def channel_item(
    channel_id: str,
    *,
    title: str = "Test Channel",
    subscribers: str | None = "1200",
    videos: str | None = "42",
    views: str | None = "98000",
) -> dict[str, Any]:
    statistics: dict[str, Any] = {}
    if subscribers is not None:
        statistics["subscriberCount"] = subscribers
    if videos is not None:
        statistics["videoCount"] = videos
    if views is not None:
        statistics["viewCount"] = views
    return {
        "id": channel_id,
        "snippet": {
            "title": title,
            "description": f"{title} description",
            "customUrl": "@testchannel",
            "thumbnails": {
                "default": {"url": "https://img.example/default.jpg"},
                "high": {"url": "https://img.example/high.jpg"},
            },
        },
        "statistics": statistics,
        "brandingSettings": {"image": {"bannerExternalUrl": "https://img.example/banner.jpg"}},
    }


def video_item(
    video_id: str,
    channel_id: str,
    *,
    duration: str = "PT5M",
    tags: list[str] | None = None,
    category_id: str = "22",
    views: str = "1000",
    likes: str = "50",
    comments: str = "10",
    published_at: str = "2026-01-01T00:00:00Z",
) -> dict[str, Any]:
    snippet: dict[str, Any] = {
        "channelId": channel_id,
        "title": f"Video {video_id}",
        "description": "",
        "publishedAt": published_at,
        "categoryId": category_id,
        "thumbnails": {"medium": {"url": f"https://img.example/{video_id}.jpg"}},
    }
    if tags is not None:
        snippet["tags"] = tags
    return {
        "id": video_id,
        "snippet": snippet,
        "contentDetails": {"duration": duration},
        "statistics": {"viewCount": views, "likeCount": likes, "commentCount": comments},
    }


class FakeYouTubeApi:
    """Stands in for `_fetch_json`, answering by endpoint from seeded data."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.channels: dict[str, dict[str, Any]] = {}
        self.search_pages: dict[str, list[list[str]]] = {}
        self.videos: dict[str, dict[str, Any]] = {}
        self.queued_outcomes: list[FetchOutcome] = []

    def add_channel(self, channel_id: str, **kwargs: Any) -> None:
        self.channels[channel_id] = channel_item(channel_id, **kwargs)

    def add_video(self, video_id: str, channel_id: str, **kwargs: Any) -> None:
        self.videos[video_id] = video_item(video_id, channel_id, **kwargs)

    def set_pages(self, channel_id: str, pages: list[list[str]]) -> None:
        self.search_pages[channel_id] = pages

    def endpoint_calls(self, endpoint: str) -> list[dict[str, str]]:
        return [params for name, params in self.calls if name == endpoint]

    def __call__(self, url: str, *, timeout_seconds: float) -> tuple[int, dict[str, Any] | None]:
        _ = timeout_seconds
        parts = urlsplit(url)
        endpoint = parts.path.rsplit("/", 1)[-1]
        params = dict(parse_qsl(parts.query))
        self.calls.append((endpoint, params))

        if self.queued_outcomes:
            outcome = self.queued_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        if endpoint == "channels":
            channel = self.channels.get(params.get("id", ""))
            return 200, {"items": [channel] if channel is not None else []}
        if endpoint == "search":
            return 200, self._search_page(params)
        if endpoint == "videos":
            requested = params.get("id", "").split(",")
            return 200, {"items": [self.videos[v] for v in requested if v in self.videos]}
        return 404, {"error": {"code": 404, "message": "Not Found", "errors": []}}

    def _search_page(self, params: dict[str, str]) -> dict[str, Any]:
        pages = self.search_pages.get(params.get("channelId", ""), [])
        token = params.get("pageToken")
        index = int(token.removeprefix("page-")) - 1 if token else 0
        if index >= len(pages):
            return {"items": []}
        payload: dict[str, Any] = {
            "items": [
                {
                    "id": {"kind": "youtube#video", "videoId": video_id},
                    "snippet": {"publishedAt": "2026-01-01T00:00:00Z"},
                }
                for video_id in pages[index]
            ]
        }
        if index + 1 < len(pages):
            payload["nextPageToken"] = f"page-{index + 2}"
        return payload


@pytest.fixture(autouse=True)
def _isolated_youtube_env(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    monkeypatch.delenv("YOUTUBE_API_KEY", raising=False)
    monkeypatch.delenv("CHANNEL_INSIGHTS_YOUTUBE_API_KEY", raising=False)


@pytest.fixture
def fake_youtube(monkeypatch: pytest.MonkeyPatch) -> FakeYouTubeApi:
    fake = FakeYouTubeApi()
    monkeypatch.setattr(youtube_client_module, "_fetch_json", fake)
    return fake


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    recorded: list[float] = []
    monkeypatch.setattr("backend.app.services.youtube_client.time.sleep", recorded.append)
    return recorded


@pytest.fixture
def youtube_api_client(fake_youtube: FakeYouTubeApi) -> YouTubeApiClient:
    _ = fake_youtube
    return YouTubeApiClient(
        "test-api-key",
        quota_tracker=QuotaTracker(daily_limit=10_000, per_minute_limit=100),
        cache=ResponseCache(max_entries=100),
    )


@pytest.fixture
def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "state.db")
    database.initialize()
    return database


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("CHANNEL_INSIGHTS_DATA_DIR", str(data_dir))
    monkeypatch.setenv("CHANNEL_INSIGHTS_YOUTUBE_API_KEY", "test-api-key")
    monkeypatch.setenv("CHANNEL_INSIGHTS_JOB_WORKERS_ENABLED", "0")
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
