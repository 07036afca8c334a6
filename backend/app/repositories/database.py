from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS channels (
    channel_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NULL,
    custom_url TEXT NULL,
    thumbnail_url TEXT NULL,
    banner_url TEXT NULL,
    subscriber_count INTEGER NOT NULL DEFAULT 0,
    video_count INTEGER NOT NULL DEFAULT 0,
    view_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS videos (
    video_id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NULL,
    published_at TEXT NULL,
    duration_seconds INTEGER NOT NULL DEFAULT 0,
    view_count INTEGER NOT NULL DEFAULT 0,
    like_count INTEGER NOT NULL DEFAULT 0,
    comment_count INTEGER NOT NULL DEFAULT 0,
    thumbnail_url TEXT NULL,
    is_short INTEGER NOT NULL DEFAULT 0,
    category_id TEXT NULL,
    tags_json TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(channel_id) REFERENCES channels(channel_id)
);

CREATE INDEX IF NOT EXISTS idx_videos_channel_id ON videos(channel_id);
CREATE INDEX IF NOT EXISTS idx_videos_published_at ON videos(published_at);
CREATE INDEX IF NOT EXISTS idx_videos_is_short ON videos(is_short);

CREATE TABLE IF NOT EXISTS channel_analytics (
    channel_id TEXT NOT NULL UNIQUE,
    total_videos INTEGER NOT NULL,
    total_shorts INTEGER NOT NULL,
    shorts_percentage REAL NOT NULL,
    total_views INTEGER NOT NULL,
    average_view_count REAL NOT NULL,
    calculated_at TEXT NOT NULL,
    FOREIGN KEY(channel_id) REFERENCES channels(channel_id)
);

CREATE TABLE IF NOT EXISTS job_queue (
    id TEXT PRIMARY KEY,
    job_type TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    priority INTEGER NOT NULL DEFAULT 1,
    options_json TEXT NOT NULL DEFAULT '{}',
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    started_at TEXT NULL,
    completed_at TEXT NULL,
    error_message TEXT NULL,
    progress INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_job_queue_status ON job_queue(status, priority, created_at);
CREATE INDEX IF NOT EXISTS idx_job_queue_channel_id ON job_queue(channel_id);
"""

# Retry bookkeeping columns missing from a job_queue table created with the
# plain (id .. progress) layout; added in place on initialize.
_JOB_QUEUE_LATE_COLUMNS: tuple[tuple[str, str], ...] = (
    ("options_json", "TEXT NOT NULL DEFAULT '{}'"),
    ("attempts", "INTEGER NOT NULL DEFAULT 0"),
)


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        # Workers and request handlers share the file; wait instead of failing on locks.
        conn = sqlite3.connect(self._path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            _maybe_migrate_job_queue_schema(conn)
            conn.executescript(SCHEMA_SQL)


def _maybe_migrate_job_queue_schema(conn: sqlite3.Connection) -> None:
    columns = _table_columns(conn, "job_queue")
    if not columns:
        return

    for column_name, column_sql in _JOB_QUEUE_LATE_COLUMNS:
        if column_name not in columns:
            conn.execute(f"ALTER TABLE job_queue ADD COLUMN {column_name} {column_sql}")


def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row["name"]) for row in rows}
