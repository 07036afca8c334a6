from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from backend.app.repositories.jobs_repository import Job
from backend.app.repositories.youtube_data_repository import YouTubeDataRepository
from backend.app.services.pagination import collect_pages
from backend.app.services.youtube_client import YouTubeApiClient
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("channel_insights.ingestion")

DEFAULT_MAX_PAGES = 5
MAX_PAGES_LIMIT = 50

ProgressReporter = Callable[[int], None]


@dataclass(frozen=True)
class ChannelFetchResult:
    channel_id: str
    title: str

    def as_dict(self) -> dict[str, Any]:
        return {"channel_id": self.channel_id, "title": self.title}


@dataclass(frozen=True)
class VideoFetchResult:
    channel_id: str
    videos_processed: int
    total_videos: int
    total_shorts: int
    shorts_percentage: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "videos_processed": self.videos_processed,
            "total_videos": self.total_videos,
            "total_shorts": self.total_shorts,
            "shorts_percentage": self.shorts_percentage,
        }


class IngestionService:
    """Job handlers that pull channel data from YouTube into storage."""

    def __init__(
        self,
        *,
        client: YouTubeApiClient,
        repository: YouTubeDataRepository,
        default_max_pages: int = DEFAULT_MAX_PAGES,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._client = client
        self._repository = repository
        self._default_max_pages = resolve_max_pages(default_max_pages, default=DEFAULT_MAX_PAGES)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    @property
    def default_max_pages(self) -> int:
        return self._default_max_pages

    def fetch_channel(self, job: Job, report_progress: ProgressReporter) -> ChannelFetchResult:
        channel = self._client.get_channel_info(job.channel_id)
        report_progress(50)
        stored = self._repository.upsert_channel(channel)
        report_progress(100)
        LOGGER.info("channel stored channel_id=%s title=%s", stored.channel_id, stored.title)
        return ChannelFetchResult(channel_id=stored.channel_id, title=stored.title)

    def fetch_videos(self, job: Job, report_progress: ProgressReporter) -> VideoFetchResult:
        channel_id = job.channel_id
        max_pages = resolve_max_pages(job.options.get("max_pages"), default=self._default_max_pages)

        # Videos reference their channel row.
        if self._repository.get_channel(channel_id) is None:
            LOGGER.info("channel missing before video fetch; fetching channel_id=%s", channel_id)
            self._repository.upsert_channel(self._client.get_channel_info(channel_id))

        started_at = time.perf_counter()
        videos = collect_pages(self._client, channel_id, max_pages)
        report_progress(50)

        stored_count = self._repository.upsert_videos(videos)
        analytics = self._repository.recompute_channel_analytics(channel_id)
        report_progress(100)

        self._telemetry.emit(
            "ingestion.videos.stored",
            channel_id=channel_id,
            max_pages=max_pages,
            videos_processed=stored_count,
            total_videos=analytics.total_videos,
            total_shorts=analytics.total_shorts,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )
        return VideoFetchResult(
            channel_id=channel_id,
            videos_processed=stored_count,
            total_videos=analytics.total_videos,
            total_shorts=analytics.total_shorts,
            shorts_percentage=analytics.shorts_percentage,
        )


def resolve_max_pages(raw_value: object, *, default: int) -> int:
    if isinstance(raw_value, bool) or not isinstance(raw_value, int):
        return default
    if raw_value < 1:
        return default
    return min(raw_value, MAX_PAGES_LIMIT)
