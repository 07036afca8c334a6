from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from time import perf_counter
from typing import Annotated
from uuid import uuid4

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.api.routes import router
from backend.app.dependencies import (
    get_job_queue,
    get_quota_tracker,
    get_response_cache,
    get_settings,
    get_telemetry,
    get_youtube_client,
)
from backend.app.logging_config import configure_application_logging
from backend.app.models.api_contracts import ApiUsageView, CacheView, HealthResponse, QuotaView
from backend.app.repositories.youtube_data_repository import ChannelNotStoredError
from backend.app.services.job_queue import InvalidJobError
from backend.app.services.quota_tracker import QuotaTracker
from backend.app.services.response_cache import ResponseCache
from backend.app.services.youtube_client import (
    NotFoundError,
    RateLimitedError,
    YouTubeApiClient,
    YouTubeApiError,
)


def health_check(
    quota_tracker: Annotated[QuotaTracker, Depends(get_quota_tracker)],
    cache: Annotated[ResponseCache, Depends(get_response_cache)],
    client: Annotated[YouTubeApiClient, Depends(get_youtube_client)],
) -> HealthResponse:
    quota = quota_tracker.snapshot()
    cache_stats = cache.stats()
    usage = client.usage()
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(UTC).isoformat(),
        quota=QuotaView(
            daily_limit=quota.daily_limit,
            daily_used=quota.daily_used,
            daily_remaining=quota.daily_remaining,
            minute_limit=quota.minute_limit,
            minute_used=quota.minute_used,
            minute_remaining=quota.minute_remaining,
        ),
        cache=CacheView(
            size=cache_stats.size,
            max_entries=cache_stats.max_entries,
            hits=cache_stats.hits,
            misses=cache_stats.misses,
        ),
        api_usage=ApiUsageView(
            network_requests=usage.network_requests,
            cache_hits=usage.cache_hits,
            quota_units_consumed=usage.quota_units_consumed,
        ),
    )


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    job_queue = get_job_queue()

    if settings.job_workers_enabled:
        job_queue.start()

    try:
        yield
    finally:
        job_queue.stop()


def status_code_for_api_error(exc: YouTubeApiError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    # Quota, upstream and transport failures all surface as unavailable.
    return 503


def create_app() -> FastAPI:
    # Fails fast when required configuration (the API key) is missing.
    get_settings()
    app = FastAPI(title="Channel Insights API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        telemetry = get_telemetry()
        incoming_request_id = request.headers.get("X-Request-ID")
        request_id = (
            incoming_request_id.strip()
            if isinstance(incoming_request_id, str) and incoming_request_id.strip()
            else str(uuid4())
        )
        context_tokens = bind_contextvars(
            request_id=request_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        started_at = perf_counter()
        telemetry.emit(
            "http.request.start",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit(
                "http.request.error",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            telemetry.emit(
                "http.request.finish",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                status_code=response.status_code,
            )
            return response
        finally:
            reset_contextvars(**context_tokens)

    async def invalid_job_handler(_: Request, exc: Exception) -> Response:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    async def channel_not_stored_handler(_: Request, exc: Exception) -> Response:
        return JSONResponse(status_code=404, content={"detail": "Channel not found"})

    async def youtube_api_error_handler(_: Request, exc: Exception) -> Response:
        assert isinstance(exc, YouTubeApiError)
        headers: dict[str, str] = {}
        if isinstance(exc, RateLimitedError):
            headers["Retry-After"] = str(exc.retry_after_seconds)
        return JSONResponse(
            status_code=status_code_for_api_error(exc),
            content={"detail": str(exc), "error_type": type(exc).__name__},
            headers=headers,
        )

    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(InvalidJobError, invalid_job_handler)
    app.add_exception_handler(ChannelNotStoredError, channel_not_stored_handler)
    app.add_exception_handler(YouTubeApiError, youtube_api_error_handler)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )

    return app
