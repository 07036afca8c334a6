from __future__ import annotations

from functools import lru_cache

from backend.app.api.rate_limits import SlidingWindowRateLimiter
from backend.app.config import AppSettings, load_settings
from backend.app.repositories.database import Database
from backend.app.repositories.jobs_repository import JobsRepository
from backend.app.repositories.youtube_data_repository import YouTubeDataRepository
from backend.app.services.ingestion_service import IngestionService
from backend.app.services.job_queue import JobQueue
from backend.app.services.quota_tracker import QuotaTracker
from backend.app.services.response_cache import CacheTtlPolicy, ResponseCache
from backend.app.services.youtube_client import YouTubeApiClient
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_quota_tracker() -> QuotaTracker:
    settings = get_settings()
    return QuotaTracker(
        daily_limit=settings.youtube_daily_quota_limit,
        per_minute_limit=settings.youtube_requests_per_minute,
    )


@lru_cache(maxsize=1)
def get_response_cache() -> ResponseCache:
    return ResponseCache(max_entries=get_settings().response_cache_max_entries)


@lru_cache(maxsize=1)
def get_youtube_client() -> YouTubeApiClient:
    settings = get_settings()
    assert settings.youtube_api_key is not None
    return YouTubeApiClient(
        settings.youtube_api_key,
        quota_tracker=get_quota_tracker(),
        cache=get_response_cache(),
        base_url=settings.youtube_api_base_url,
        timeout_seconds=settings.youtube_http_timeout_seconds,
        quota_retry_delay_seconds=settings.youtube_quota_retry_delay_seconds,
        cache_ttl_policy=CacheTtlPolicy(
            list_ttl_seconds=settings.response_cache_list_ttl_seconds,
            channel_ttl_seconds=settings.response_cache_channel_ttl_seconds,
            default_ttl_seconds=settings.response_cache_default_ttl_seconds,
        ),
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_data_repository() -> YouTubeDataRepository:
    return YouTubeDataRepository(get_database())


@lru_cache(maxsize=1)
def get_jobs_repository() -> JobsRepository:
    return JobsRepository(get_database())


@lru_cache(maxsize=1)
def get_ingestion_service() -> IngestionService:
    return IngestionService(
        client=get_youtube_client(),
        repository=get_data_repository(),
        default_max_pages=get_settings().video_fetch_default_max_pages,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_job_queue() -> JobQueue:
    settings = get_settings()
    ingestion = get_ingestion_service()
    return JobQueue(
        get_jobs_repository(),
        {
            "channel_fetch": ingestion.fetch_channel,
            "video_fetch": ingestion.fetch_videos,
        },
        max_attempts=settings.job_max_attempts,
        retry_base_delay_seconds=settings.job_retry_base_delay_seconds,
        worker_count=settings.job_worker_count,
        poll_interval_seconds=settings.job_poll_interval_seconds,
        shutdown_timeout_seconds=settings.job_shutdown_timeout_seconds,
        telemetry=get_telemetry(),
        lock_path=settings.data_dir / "job-workers.lock",
    )


@lru_cache(maxsize=1)
def get_fetch_rate_limiter() -> SlidingWindowRateLimiter:
    settings = get_settings()
    return SlidingWindowRateLimiter(
        max_requests=settings.fetch_rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
        trust_forwarded_for=settings.rate_limit_trust_forwarded_for,
    )


@lru_cache(maxsize=1)
def get_read_rate_limiter() -> SlidingWindowRateLimiter:
    settings = get_settings()
    return SlidingWindowRateLimiter(
        max_requests=settings.read_rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
        trust_forwarded_for=settings.rate_limit_trust_forwarded_for,
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    get_job_queue.cache_clear()
    get_ingestion_service.cache_clear()
    get_jobs_repository.cache_clear()
    get_data_repository.cache_clear()
    get_youtube_client.cache_clear()
    get_response_cache.cache_clear()
    get_quota_tracker.cache_clear()
    get_database.cache_clear()
    get_fetch_rate_limiter.cache_clear()
    get_read_rate_limiter.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
