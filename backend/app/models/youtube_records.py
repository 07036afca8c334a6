from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ChannelRecord:
    """Channel fields as returned by the YouTube Data API, normalized."""

    channel_id: str
    title: str
    description: str | None = None
    custom_url: str | None = None
    thumbnail_url: str | None = None
    banner_url: str | None = None
    subscriber_count: int = 0
    video_count: int = 0
    view_count: int = 0


@dataclass(frozen=True)
class VideoRecord:
    """Video fields merged from a listing page and its detail lookup."""

    video_id: str
    channel_id: str
    title: str
    description: str | None = None
    published_at: str | None = None
    duration_seconds: int = 0
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    thumbnail_url: str | None = None
    is_short: bool = False
    category_id: str | None = None
    tags: tuple[str, ...] = ()
