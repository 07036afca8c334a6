from __future__ import annotations

import errno
import logging
import os
import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.repositories.jobs_repository import JOB_TYPES, Job, JobsRepository
from backend.app.services.youtube_client import YouTubeApiError
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("channel_insights.jobs")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 2.0
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 30.0
INTERRUPTED_JOB_MESSAGE = "Job interrupted by shutdown before completion."
_MAX_ERROR_MESSAGE_CHARS = 500

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None

ProgressReporter = Callable[[int], None]
JobHandler = Callable[[Job, ProgressReporter], Any]


class InvalidJobError(ValueError):
    pass


class JobQueue:
    """Durable background work backed by the `job_queue` table.

    Jobs move pending -> started -> completed | failed. A handler failure is
    retried with exponential backoff only when the error is a retryable
    `YouTubeApiError`; everything else fails the job on the first attempt.
    """

    def __init__(
        self,
        repository: JobsRepository,
        handlers: Mapping[str, JobHandler],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
        worker_count: int = 1,
        poll_interval_seconds: float = 1.0,
        shutdown_timeout_seconds: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
    ) -> None:
        unknown = set(handlers) - JOB_TYPES
        if unknown:
            raise ValueError(f"Handlers registered for unknown job types: {sorted(unknown)}")
        self._repository = repository
        self._handlers = dict(handlers)
        self._max_attempts = max(1, max_attempts)
        self._retry_base_delay_seconds = max(0.0, retry_base_delay_seconds)
        self._worker_count = max(1, worker_count)
        self._poll_interval_seconds = max(0.05, poll_interval_seconds)
        self._shutdown_timeout_seconds = max(0.0, shutdown_timeout_seconds)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock_path = lock_path
        self._lock_file: Any | None = None
        self._lock_acquired = False

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def enqueue(
        self,
        job_type: str,
        channel_id: str,
        *,
        priority: int = 1,
        options: Mapping[str, Any] | None = None,
    ) -> Job:
        normalized_channel_id = channel_id.strip() if isinstance(channel_id, str) else ""
        if not normalized_channel_id:
            raise InvalidJobError("Channel ID is required")
        if job_type not in self._handlers:
            raise InvalidJobError(f"Unsupported job type: {job_type}")
        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 1:
            raise InvalidJobError("Priority must be a positive integer")
        max_pages = (options or {}).get("max_pages")
        if max_pages is not None and (
            isinstance(max_pages, bool) or not isinstance(max_pages, int) or max_pages < 1
        ):
            raise InvalidJobError("maxPages must be a positive integer")

        job = self._repository.create_job(
            job_type=job_type,
            channel_id=normalized_channel_id,
            priority=priority,
            options=dict(options or {}),
        )
        LOGGER.info(
            "job enqueued job_id=%s job_type=%s channel_id=%s priority=%s",
            job.job_id,
            job.job_type,
            job.channel_id,
            job.priority,
        )
        self._telemetry.emit(
            "job.enqueued",
            job_id=job.job_id,
            job_type=job.job_type,
            priority=job.priority,
        )
        self._wake_event.set()
        return job

    def get_status(self, job_id: str) -> Job | None:
        return self._repository.get_job(job_id)

    def list_jobs(
        self,
        *,
        status: str | None = None,
        channel_id: str | None = None,
        limit: int = 50,
    ) -> list[Job]:
        return self._repository.list_jobs(status=status, channel_id=channel_id, limit=limit)

    def run_next(self) -> Job | None:
        """Claim and execute the next pending job; returns its final state."""
        job = self._repository.claim_next_pending()
        if job is None:
            return None
        return self._execute(job)

    def recover_interrupted(self) -> int:
        recovered = self._repository.fail_started_jobs(INTERRUPTED_JOB_MESSAGE)
        if recovered:
            LOGGER.warning("marked interrupted jobs as failed count=%s", recovered)
        return recovered

    def start(self) -> None:
        if self.running:
            return

        if not self._try_acquire_process_lock():
            return

        self.recover_interrupted()
        self._stop_event.clear()
        self._threads = []
        for index in range(self._worker_count):
            thread = threading.Thread(
                target=self._run_loop,
                name=f"channel-insights-worker-{index + 1}",
            )
            thread.daemon = True
            thread.start()
            self._threads.append(thread)
        LOGGER.info("job workers started count=%s", self._worker_count)

    def stop(self, *, timeout_seconds: float | None = None) -> None:
        """Signal workers to exit and wait for in-flight jobs.

        The process lock is only released once every worker has exited.
        """
        self._stop_event.set()
        self._wake_event.set()
        wait_seconds = (
            self._shutdown_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        deadline = time.monotonic() + max(0.0, wait_seconds)
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        still_running = [thread for thread in self._threads if thread.is_alive()]
        if still_running:
            LOGGER.warning(
                "job workers still busy after shutdown wait; keeping worker lock count=%s",
                len(still_running),
            )
            self._threads = still_running
            return

        self._threads = []
        self._release_process_lock()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self.run_next()
            except Exception:
                LOGGER.exception("job worker iteration failed")
                job = None

            if job is None:
                self._wake_event.wait(self._poll_interval_seconds)
                self._wake_event.clear()

    def _execute(self, job: Job) -> Job:
        handler = self._handlers.get(job.job_type)
        job_tokens = bind_contextvars(
            job_id=job.job_id,
            job_type=job.job_type,
            channel_id=job.channel_id,
        )
        started_at = time.perf_counter()
        self._telemetry.emit(
            "job.execute.start",
            job_id=job.job_id,
            job_type=job.job_type,
        )
        try:
            if handler is None:
                self._fail(
                    job,
                    f"Unsupported job type: {job.job_type}",
                    started_at,
                    "InvalidJobError",
                )
            else:
                self._run_with_retries(job, handler, started_at)
        finally:
            reset_contextvars(**job_tokens)

        final = self._repository.get_job(job.job_id)
        return final if final is not None else job

    def _run_with_retries(self, job: Job, handler: JobHandler, started_at: float) -> None:
        def report_progress(progress: int) -> None:
            self._repository.update_progress(job.job_id, progress)

        while True:
            attempt = self._repository.record_attempt(job.job_id)
            try:
                result = handler(job, report_progress)
            except YouTubeApiError as exc:
                if exc.retryable and attempt < self._max_attempts:
                    delay_seconds = self._retry_base_delay_seconds * (2 ** (attempt - 1))
                    LOGGER.warning(
                        "job attempt failed; retrying job_id=%s attempt=%s delay=%s error=%s",
                        job.job_id,
                        attempt,
                        delay_seconds,
                        exc,
                    )
                    self._telemetry.emit(
                        "job.execute.retry",
                        job_id=job.job_id,
                        job_type=job.job_type,
                        attempt=attempt,
                        delay_seconds=delay_seconds,
                        error_type=type(exc).__name__,
                    )
                    time.sleep(delay_seconds)
                    continue
                LOGGER.warning(
                    "job failed job_id=%s attempt=%s error_type=%s error=%s",
                    job.job_id,
                    attempt,
                    type(exc).__name__,
                    exc,
                )
                self._fail(job, str(exc), started_at, type(exc).__name__)
                return
            except Exception as exc:
                LOGGER.exception(
                    "job failed unexpectedly job_id=%s attempt=%s", job.job_id, attempt
                )
                self._fail(job, str(exc) or type(exc).__name__, started_at, type(exc).__name__)
                return

            self._repository.mark_completed(job.job_id)
            self._telemetry.emit(
                "job.execute.finish",
                job_id=job.job_id,
                job_type=job.job_type,
                attempts=attempt,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                outcome="ok",
                **_result_fields(result),
            )
            LOGGER.info("job completed job_id=%s attempts=%s", job.job_id, attempt)
            return

    def _fail(self, job: Job, message: str, started_at: float, error_type: str) -> None:
        self._repository.mark_failed(job.job_id, message[:_MAX_ERROR_MESSAGE_CHARS])
        self._telemetry.emit(
            "job.execute.error",
            job_id=job.job_id,
            job_type=job.job_type,
            channel_id=job.channel_id,
            error_type=error_type,
            error_message=message,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )

    def _try_acquire_process_lock(self) -> bool:
        if self._lock_path is None:
            return True

        if fcntl is None:
            LOGGER.warning("job worker lock unavailable on this platform; starting workers")
            return True

        lock_path = self._lock_path
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = lock_path.open("a+", encoding="utf-8")
        except OSError:
            LOGGER.warning(
                "job worker lock file unavailable path=%s; starting workers anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            lock_file.close()
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                LOGGER.info("job workers skipped; lock held by another process path=%s", lock_path)
                return False
            LOGGER.warning(
                "job worker lock acquisition failed path=%s; starting workers anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            lock_file.seek(0)
            lock_file.truncate()
            lock_file.write(f"{os.getpid()}\n")
            lock_file.flush()
        except OSError:
            LOGGER.debug("job worker lock metadata write failed path=%s", lock_path, exc_info=True)

        self._lock_file = lock_file
        self._lock_acquired = True
        return True

    def _release_process_lock(self) -> None:
        lock_file = self._lock_file
        if lock_file is None:
            self._lock_acquired = False
            return

        try:
            if self._lock_acquired and fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError:
            LOGGER.debug("job worker lock release failed path=%s", self._lock_path, exc_info=True)
        finally:
            lock_file.close()
            self._lock_file = None
            self._lock_acquired = False


def _result_fields(result: object) -> dict[str, Any]:
    as_dict = getattr(result, "as_dict", None)
    if callable(as_dict):
        fields = as_dict()
        if isinstance(fields, dict):
            return {str(key): value for key, value in fields.items() if key != "channel_id"}
    return {}
