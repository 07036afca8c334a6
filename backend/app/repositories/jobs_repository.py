from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Literal, cast
from uuid import uuid4

from backend.app.repositories.common import (
    decode_object,
    encode_object,
    optional_text,
    row_int,
    utc_now_iso,
)
from backend.app.repositories.database import Database

JobType = Literal["channel_fetch", "video_fetch"]
JobStatus = Literal["pending", "started", "completed", "failed"]

JOB_TYPES: frozenset[str] = frozenset({"channel_fetch", "video_fetch"})
JOB_STATUSES: frozenset[str] = frozenset({"pending", "started", "completed", "failed"})
TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

_JOB_COLUMNS = """
    id, job_type, channel_id, status, priority, options_json, attempts,
    created_at, started_at, completed_at, error_message, progress
"""


@dataclass(frozen=True)
class Job:
    job_id: str
    job_type: str
    channel_id: str
    status: str
    priority: int
    options: dict[str, Any]
    attempts: int
    progress: int
    created_at: str
    started_at: str | None
    completed_at: str | None
    error_message: str | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class JobsRepository:
    """Persistence for the job queue.

    Status updates are guarded in SQL so a row only ever moves forward:
    pending -> started -> completed | failed. A guarded update that matches no
    row returns False instead of raising.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def create_job(
        self,
        *,
        job_type: str,
        channel_id: str,
        priority: int = 1,
        options: dict[str, Any] | None = None,
    ) -> Job:
        job_id = f"job_{uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO job_queue
                (id, job_type, channel_id, status, priority, options_json, attempts,
                 created_at, progress)
                VALUES (?, ?, ?, 'pending', ?, ?, 0, ?, 0)
                """,
                (
                    job_id,
                    job_type,
                    channel_id,
                    priority,
                    encode_object(options),
                    utc_now_iso(),
                ),
            )
            row = _select_job(conn, job_id)

        assert row is not None
        return _row_to_job(row)

    def get_job(self, job_id: str) -> Job | None:
        with self._db.connection() as conn:
            row = _select_job(conn, job_id)
        if row is None:
            return None
        return _row_to_job(row)

    def list_jobs(
        self,
        *,
        status: str | None = None,
        channel_id: str | None = None,
        limit: int = 50,
    ) -> list[Job]:
        query = f"SELECT {_JOB_COLUMNS} FROM job_queue WHERE 1 = 1"
        params: list[object] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        if channel_id is not None:
            query += " AND channel_id = ?"
            params.append(channel_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(max(1, limit))

        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_job(row) for row in rows]

    def claim_next_pending(self) -> Job | None:
        """Atomically move the highest-priority pending job to `started`."""
        with self._db.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            candidate = conn.execute(
                """
                SELECT id
                FROM job_queue
                WHERE status = 'pending'
                ORDER BY priority ASC, created_at ASC, rowid ASC
                LIMIT 1
                """
            ).fetchone()
            if candidate is None:
                return None

            job_id = str(candidate["id"])
            cursor = conn.execute(
                """
                UPDATE job_queue
                SET status = 'started', started_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (utc_now_iso(), job_id),
            )
            if cursor.rowcount != 1:
                return None
            row = _select_job(conn, job_id)

        assert row is not None
        return _row_to_job(row)

    def record_attempt(self, job_id: str) -> int:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE job_queue
                SET attempts = attempts + 1
                WHERE id = ? AND status = 'started'
                """,
                (job_id,),
            )
            row = conn.execute(
                "SELECT attempts FROM job_queue WHERE id = ?",
                (job_id,),
            ).fetchone()
        return int(row["attempts"]) if row is not None else 0

    def update_progress(self, job_id: str, progress: int) -> bool:
        clamped = max(0, min(100, progress))
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE job_queue
                SET progress = MAX(progress, ?)
                WHERE id = ? AND status = 'started'
                """,
                (clamped, job_id),
            )
        return cursor.rowcount == 1

    def mark_completed(self, job_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE job_queue
                SET status = 'completed', completed_at = ?, progress = 100, error_message = NULL
                WHERE id = ? AND status = 'started'
                """,
                (utc_now_iso(), job_id),
            )
        return cursor.rowcount == 1

    def mark_failed(self, job_id: str, error_message: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE job_queue
                SET status = 'failed', completed_at = ?, error_message = ?
                WHERE id = ? AND status = 'started'
                """,
                (utc_now_iso(), error_message, job_id),
            )
        return cursor.rowcount == 1

    def fail_started_jobs(self, error_message: str) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE job_queue
                SET status = 'failed', completed_at = ?, error_message = ?
                WHERE status = 'started'
                """,
                (utc_now_iso(), error_message),
            )
        return max(0, cursor.rowcount)


def _select_job(conn: sqlite3.Connection, job_id: str) -> sqlite3.Row | None:
    return cast(
        sqlite3.Row | None,
        conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM job_queue WHERE id = ?",
            (job_id,),
        ).fetchone(),
    )


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        job_id=str(row["id"]),
        job_type=str(row["job_type"]),
        channel_id=str(row["channel_id"]),
        status=str(row["status"]),
        priority=int(row["priority"]),
        options=decode_object(row["options_json"]),
        attempts=row_int(row, "attempts"),
        progress=row_int(row, "progress"),
        created_at=str(row["created_at"]),
        started_at=optional_text(row["started_at"]),
        completed_at=optional_text(row["completed_at"]),
        error_message=optional_text(row["error_message"]),
    )

