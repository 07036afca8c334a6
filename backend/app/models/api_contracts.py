from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

JobStatusName = Literal["pending", "started", "completed", "failed"]


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class ChannelFetchRequest(ApiModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    channel_id: str = Field(default="", max_length=128)
    priority: int = 1


class VideoFetchRequest(ApiModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    max_pages: int | None = None
    priority: int = 1


class JobAcceptedResponse(ApiModel):
    job_id: str
    job_type: str
    channel_id: str
    status: JobStatusName
    message: str


class JobView(ApiModel):
    id: str
    job_type: str
    channel_id: str
    status: JobStatusName
    priority: int
    progress: int
    attempts: int
    options: dict[str, Any]
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None


class JobStatusResponse(ApiModel):
    job: JobView


class JobListResponse(ApiModel):
    jobs: list[JobView]
    count: int


class ChannelView(ApiModel):
    channel_id: str
    title: str
    description: str | None = None
    custom_url: str | None = None
    thumbnail_url: str | None = None
    banner_url: str | None = None
    subscriber_count: int
    video_count: int
    view_count: int
    created_at: str
    updated_at: str


class ChannelResponse(ApiModel):
    channel: ChannelView


class ChannelListResponse(ApiModel):
    channels: list[ChannelView]
    count: int
    limit: int
    offset: int


class VideoView(ApiModel):
    video_id: str
    channel_id: str
    title: str
    description: str | None = None
    published_at: str | None = None
    duration_seconds: int
    view_count: int
    like_count: int
    comment_count: int
    thumbnail_url: str | None = None
    is_short: bool
    category_id: str | None = None
    tags: list[str]
    engagement_rate: float
    length_category: str
    created_at: str
    updated_at: str


class VideoResponse(ApiModel):
    video: VideoView


class VideoListResponse(ApiModel):
    videos: list[VideoView]
    count: int
    total: int
    limit: int
    offset: int


class TrendingVideosResponse(ApiModel):
    videos: list[VideoView]
    count: int
    days: int


class AnalyticsView(ApiModel):
    channel_id: str
    total_videos: int
    total_shorts: int
    shorts_percentage: float
    total_views: int
    average_view_count: float
    calculated_at: str


class AnalyticsResponse(ApiModel):
    analytics: AnalyticsView


class QuotaView(ApiModel):
    daily_limit: int
    daily_used: int
    daily_remaining: int
    minute_limit: int
    minute_used: int
    minute_remaining: int


class CacheView(ApiModel):
    size: int
    max_entries: int
    hits: int
    misses: int


class ApiUsageView(ApiModel):
    network_requests: int
    cache_hits: int
    quota_units_consumed: int


class HealthResponse(ApiModel):
    status: Literal["ok"]
    timestamp: str
    quota: QuotaView
    cache: CacheView
    api_usage: ApiUsageView
