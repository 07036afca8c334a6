from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from backend.app.models.youtube_records import ChannelRecord, VideoRecord
from backend.app.repositories.common import (
    decode_string_list,
    encode_string_list,
    optional_text,
    row_int,
    utc_now_iso,
)
from backend.app.repositories.database import Database


class ChannelNotStoredError(LookupError):
    def __init__(self, channel_id: str) -> None:
        super().__init__(f"Channel is not stored: {channel_id}")
        self.channel_id = channel_id


@dataclass(frozen=True)
class StoredChannel:
    channel_id: str
    title: str
    description: str | None
    custom_url: str | None
    thumbnail_url: str | None
    banner_url: str | None
    subscriber_count: int
    video_count: int
    view_count: int
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class StoredVideo:
    video_id: str
    channel_id: str
    title: str
    description: str | None
    published_at: str | None
    duration_seconds: int
    view_count: int
    like_count: int
    comment_count: int
    thumbnail_url: str | None
    is_short: bool
    category_id: str | None
    tags: tuple[str, ...]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class ChannelAnalytics:
    channel_id: str
    total_videos: int
    total_shorts: int
    shorts_percentage: float
    total_views: int
    average_view_count: float
    calculated_at: str


_VIDEO_COLUMNS = """
    video_id, channel_id, title, description, published_at, duration_seconds,
    view_count, like_count, comment_count, thumbnail_url, is_short, category_id,
    tags_json, created_at, updated_at
"""


class YouTubeDataRepository:
    """Owns persistence of channels, videos and per-channel analytics.

    Every write is an upsert keyed on the YouTube id, so replaying a fetch is
    harmless: the row converges to the latest payload and only `updated_at`
    moves.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert_channel(self, channel: ChannelRecord) -> StoredChannel:
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO channels (
                    channel_id, title, description, custom_url, thumbnail_url,
                    banner_url, subscriber_count, video_count, view_count,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(channel_id) DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    custom_url = excluded.custom_url,
                    thumbnail_url = excluded.thumbnail_url,
                    banner_url = excluded.banner_url,
                    subscriber_count = excluded.subscriber_count,
                    video_count = excluded.video_count,
                    view_count = excluded.view_count,
                    updated_at = excluded.updated_at
                """,
                (
                    channel.channel_id,
                    channel.title,
                    channel.description,
                    channel.custom_url,
                    channel.thumbnail_url,
                    channel.banner_url,
                    channel.subscriber_count,
                    channel.video_count,
                    channel.view_count,
                    now_iso,
                    now_iso,
                ),
            )
            row = conn.execute(
                "SELECT * FROM channels WHERE channel_id = ?",
                (channel.channel_id,),
            ).fetchone()

        assert row is not None
        return _row_to_channel(row)

    def get_channel(self, channel_id: str) -> StoredChannel | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM channels WHERE channel_id = ?",
                (channel_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_channel(row)

    def list_channels(self, *, limit: int, offset: int = 0) -> list[StoredChannel]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM channels
                ORDER BY updated_at DESC
                LIMIT ? OFFSET ?
                """,
                (max(1, limit), max(0, offset)),
            ).fetchall()
        return [_row_to_channel(row) for row in rows]

    def upsert_video(self, video: VideoRecord) -> StoredVideo:
        with self._db.connection() as conn:
            _upsert_video_row(conn, video, utc_now_iso())
            row = conn.execute(
                f"SELECT {_VIDEO_COLUMNS} FROM videos WHERE video_id = ?",
                (video.video_id,),
            ).fetchone()

        assert row is not None
        return _row_to_video(row)

    def upsert_videos(self, videos: list[VideoRecord]) -> int:
        if not videos:
            return 0
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            for video in videos:
                _upsert_video_row(conn, video, now_iso)
        return len(videos)

    def get_video(self, video_id: str) -> StoredVideo | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_VIDEO_COLUMNS} FROM videos WHERE video_id = ?",
                (video_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_video(row)

    def list_channel_videos(
        self,
        channel_id: str,
        *,
        limit: int,
        offset: int = 0,
        is_short: bool | None = None,
    ) -> list[StoredVideo]:
        query = f"SELECT {_VIDEO_COLUMNS} FROM videos WHERE channel_id = ?"
        params: list[object] = [channel_id]
        if is_short is not None:
            query += " AND is_short = ?"
            params.append(1 if is_short else 0)
        query += " ORDER BY published_at DESC, video_id ASC LIMIT ? OFFSET ?"
        params.extend([max(1, limit), max(0, offset)])

        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_video(row) for row in rows]

    def count_channel_videos(self, channel_id: str, *, is_short: bool | None = None) -> int:
        query = "SELECT COUNT(*) AS total FROM videos WHERE channel_id = ?"
        params: list[object] = [channel_id]
        if is_short is not None:
            query += " AND is_short = ?"
            params.append(1 if is_short else 0)
        with self._db.connection() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row["total"]) if row is not None else 0

    def recompute_channel_analytics(self, channel_id: str) -> ChannelAnalytics:
        """Rebuild the analytics row from every stored video of the channel."""
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            channel_row = conn.execute(
                "SELECT 1 FROM channels WHERE channel_id = ?",
                (channel_id,),
            ).fetchone()
            if channel_row is None:
                raise ChannelNotStoredError(channel_id)

            stats = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_videos,
                    COALESCE(SUM(is_short), 0) AS total_shorts,
                    COALESCE(SUM(view_count), 0) AS total_views
                FROM videos
                WHERE channel_id = ?
                """,
                (channel_id,),
            ).fetchone()

            total_videos = int(stats["total_videos"])
            total_shorts = int(stats["total_shorts"])
            total_views = int(stats["total_views"])
            analytics = ChannelAnalytics(
                channel_id=channel_id,
                total_videos=total_videos,
                total_shorts=total_shorts,
                shorts_percentage=shorts_percentage(total_shorts, total_videos),
                total_views=total_views,
                average_view_count=(
                    round(total_views / total_videos, 2) if total_videos > 0 else 0.0
                ),
                calculated_at=now_iso,
            )
            conn.execute(
                """
                INSERT INTO channel_analytics (
                    channel_id, total_videos, total_shorts, shorts_percentage,
                    total_views, average_view_count, calculated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(channel_id) DO UPDATE SET
                    total_videos = excluded.total_videos,
                    total_shorts = excluded.total_shorts,
                    shorts_percentage = excluded.shorts_percentage,
                    total_views = excluded.total_views,
                    average_view_count = excluded.average_view_count,
                    calculated_at = excluded.calculated_at
                """,
                (
                    analytics.channel_id,
                    analytics.total_videos,
                    analytics.total_shorts,
                    analytics.shorts_percentage,
                    analytics.total_views,
                    analytics.average_view_count,
                    analytics.calculated_at,
                ),
            )
        return analytics

    def get_channel_analytics(self, channel_id: str) -> ChannelAnalytics | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT
                    channel_id, total_videos, total_shorts, shorts_percentage,
                    total_views, average_view_count, calculated_at
                FROM channel_analytics
                WHERE channel_id = ?
                """,
                (channel_id,),
            ).fetchone()
        if row is None:
            return None
        return ChannelAnalytics(
            channel_id=str(row["channel_id"]),
            total_videos=int(row["total_videos"]),
            total_shorts=int(row["total_shorts"]),
            shorts_percentage=float(row["shorts_percentage"]),
            total_views=int(row["total_views"]),
            average_view_count=float(row["average_view_count"]),
            calculated_at=str(row["calculated_at"]),
        )


def shorts_percentage(total_shorts: int, total_videos: int) -> float:
    if total_videos <= 0:
        return 0.0
    return round(total_shorts / total_videos * 100, 2)


def _upsert_video_row(conn: sqlite3.Connection, video: VideoRecord, now_iso: str) -> None:
    conn.execute(
        """
        INSERT INTO videos (
            video_id, channel_id, title, description, published_at,
            duration_seconds, view_count, like_count, comment_count,
            thumbnail_url, is_short, category_id, tags_json, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(video_id) DO UPDATE SET
            channel_id = excluded.channel_id,
            title = excluded.title,
            description = excluded.description,
            published_at = excluded.published_at,
            duration_seconds = excluded.duration_seconds,
            view_count = excluded.view_count,
            like_count = excluded.like_count,
            comment_count = excluded.comment_count,
            thumbnail_url = excluded.thumbnail_url,
            is_short = excluded.is_short,
            category_id = excluded.category_id,
            tags_json = excluded.tags_json,
            updated_at = excluded.updated_at
        """,
        (
            video.video_id,
            video.channel_id,
            video.title,
            video.description,
            video.published_at,
            video.duration_seconds,
            video.view_count,
            video.like_count,
            video.comment_count,
            video.thumbnail_url,
            1 if video.is_short else 0,
            video.category_id,
            encode_string_list(video.tags),
            now_iso,
            now_iso,
        ),
    )


def _row_to_channel(row: sqlite3.Row) -> StoredChannel:
    return StoredChannel(
        channel_id=str(row["channel_id"]),
        title=str(row["title"]),
        description=optional_text(row["description"]),
        custom_url=optional_text(row["custom_url"]),
        thumbnail_url=optional_text(row["thumbnail_url"]),
        banner_url=optional_text(row["banner_url"]),
        subscriber_count=row_int(row, "subscriber_count"),
        video_count=row_int(row, "video_count"),
        view_count=row_int(row, "view_count"),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _row_to_video(row: sqlite3.Row) -> StoredVideo:
    return StoredVideo(
        video_id=str(row["video_id"]),
        channel_id=str(row["channel_id"]),
        title=str(row["title"]),
        description=optional_text(row["description"]),
        published_at=optional_text(row["published_at"]),
        duration_seconds=row_int(row, "duration_seconds"),
        view_count=row_int(row, "view_count"),
        like_count=row_int(row, "like_count"),
        comment_count=row_int(row, "comment_count"),
        thumbnail_url=optional_text(row["thumbnail_url"]),
        is_short=bool(row["is_short"]),
        category_id=optional_text(row["category_id"]),
        tags=decode_string_list(row["tags_json"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


