from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Literal, Protocol, TypeVar

LengthCategory = Literal["unknown", "short", "medium", "long", "extended"]

SHORT_MAX_SECONDS = 60
MEDIUM_MAX_SECONDS = 300
LONG_MAX_SECONDS = 600
TRENDING_WINDOW_DAYS = 7


class PublishedVideo(Protocol):
    @property
    def published_at(self) -> str | None:
        ...


PublishedVideoT = TypeVar("PublishedVideoT", bound=PublishedVideo)


def engagement_rate(*, view_count: int, like_count: int, comment_count: int) -> float:
    """Likes plus comments as a percentage of views, two decimals."""
    if view_count <= 0:
        return 0.0
    return round((like_count + comment_count) / view_count * 100, 2)


def length_category(duration_seconds: int) -> LengthCategory:
    if duration_seconds <= 0:
        return "unknown"
    if duration_seconds <= SHORT_MAX_SECONDS:
        return "short"
    if duration_seconds <= MEDIUM_MAX_SECONDS:
        return "medium"
    if duration_seconds <= LONG_MAX_SECONDS:
        return "long"
    return "extended"


def published_within(
    videos: Iterable[PublishedVideoT],
    *,
    days: int = TRENDING_WINDOW_DAYS,
    now: datetime | None = None,
) -> list[PublishedVideoT]:
    """Videos published in the last `days` days, input order kept.

    Videos without a readable `published_at` are left out.
    """
    cutoff = (now or datetime.now(UTC)) - timedelta(days=days)
    recent: list[PublishedVideoT] = []
    for video in videos:
        published_at = _parse_published_at(video.published_at)
        if published_at is not None and published_at >= cutoff:
            recent.append(video)
    return recent


def _parse_published_at(raw_value: str | None) -> datetime | None:
    if not raw_value:
        return None
    try:
        parsed = datetime.fromisoformat(raw_value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
