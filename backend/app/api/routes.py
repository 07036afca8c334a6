from __future__ import annotations

from dataclasses import asdict
from typing import Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request

from backend.app.api.rate_limits import SlidingWindowRateLimiter, enforce_rate_limit
from backend.app.dependencies import (
    get_data_repository,
    get_fetch_rate_limiter,
    get_job_queue,
    get_read_rate_limiter,
)
from backend.app.models.api_contracts import (
    AnalyticsResponse,
    AnalyticsView,
    ChannelFetchRequest,
    ChannelListResponse,
    ChannelResponse,
    ChannelView,
    JobAcceptedResponse,
    JobListResponse,
    JobStatusResponse,
    JobView,
    TrendingVideosResponse,
    VideoFetchRequest,
    VideoListResponse,
    VideoResponse,
    VideoView,
)
from backend.app.repositories.jobs_repository import JOB_STATUSES, Job
from backend.app.repositories.youtube_data_repository import (
    ChannelAnalytics,
    StoredChannel,
    StoredVideo,
    YouTubeDataRepository,
)
from backend.app.services.job_queue import JobQueue
from backend.app.services.video_metrics import (
    TRENDING_WINDOW_DAYS,
    engagement_rate,
    length_category,
    published_within,
)

router = APIRouter()

DataRepository = Annotated[YouTubeDataRepository, Depends(get_data_repository)]
Queue = Annotated[JobQueue, Depends(get_job_queue)]


def fetch_rate_limit(
    request: Request,
    limiter: Annotated[SlidingWindowRateLimiter, Depends(get_fetch_rate_limiter)],
) -> None:
    enforce_rate_limit(limiter, request, scope="fetch")


def read_rate_limit(
    request: Request,
    limiter: Annotated[SlidingWindowRateLimiter, Depends(get_read_rate_limiter)],
) -> None:
    enforce_rate_limit(limiter, request, scope="read")


@router.post(
    "/channels/fetch",
    status_code=202,
    tags=["channels"],
    operation_id="fetch_channel",
    dependencies=[Depends(fetch_rate_limit)],
)
def fetch_channel(request: ChannelFetchRequest, queue: Queue) -> JobAcceptedResponse:
    job = queue.enqueue("channel_fetch", request.channel_id, priority=request.priority)
    return _job_accepted(job, message="Channel fetch job queued")


@router.post(
    "/channels/{channel_id}/videos/fetch",
    status_code=202,
    tags=["channels"],
    operation_id="fetch_channel_videos",
    dependencies=[Depends(fetch_rate_limit)],
)
def fetch_channel_videos(
    channel_id: str,
    queue: Queue,
    request: Annotated[VideoFetchRequest | None, Body()] = None,
) -> JobAcceptedResponse:
    payload = request if request is not None else VideoFetchRequest()
    options = {"max_pages": payload.max_pages} if payload.max_pages is not None else {}
    job = queue.enqueue("video_fetch", channel_id, priority=payload.priority, options=options)
    return _job_accepted(job, message="Video fetch job queued")


@router.get(
    "/channels",
    tags=["channels"],
    operation_id="list_channels",
    dependencies=[Depends(read_rate_limit)],
)
def list_channels(
    repository: DataRepository,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ChannelListResponse:
    channels = repository.list_channels(limit=limit, offset=offset)
    return ChannelListResponse(
        channels=[_channel_view(channel) for channel in channels],
        count=len(channels),
        limit=limit,
        offset=offset,
    )


@router.get(
    "/channels/{channel_id}",
    tags=["channels"],
    operation_id="get_channel",
    dependencies=[Depends(read_rate_limit)],
)
def get_channel(channel_id: str, repository: DataRepository) -> ChannelResponse:
    return ChannelResponse(channel=_channel_view(_require_channel(repository, channel_id)))


@router.get(
    "/channels/{channel_id}/videos",
    tags=["videos"],
    operation_id="list_channel_videos",
    dependencies=[Depends(read_rate_limit)],
)
def list_channel_videos(
    channel_id: str,
    repository: DataRepository,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    include_shorts: Annotated[bool | None, Query(alias="includeShorts")] = None,
) -> VideoListResponse:
    _require_channel(repository, channel_id)
    videos = repository.list_channel_videos(
        channel_id,
        limit=limit,
        offset=offset,
        is_short=include_shorts,
    )
    return VideoListResponse(
        videos=[_video_view(video) for video in videos],
        count=len(videos),
        total=repository.count_channel_videos(channel_id, is_short=include_shorts),
        limit=limit,
        offset=offset,
    )


@router.get(
    "/channels/{channel_id}/videos/trending",
    tags=["videos"],
    operation_id="list_trending_channel_videos",
    dependencies=[Depends(read_rate_limit)],
)
def list_trending_channel_videos(
    channel_id: str,
    repository: DataRepository,
    days: Annotated[int, Query(ge=1, le=365)] = TRENDING_WINDOW_DAYS,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> TrendingVideosResponse:
    _require_channel(repository, channel_id)
    # Newest first, so the recent ones are a prefix of this page.
    newest = repository.list_channel_videos(channel_id, limit=limit, offset=0)
    recent = published_within(newest, days=days)
    return TrendingVideosResponse(
        videos=[_video_view(video) for video in recent],
        count=len(recent),
        days=days,
    )


@router.get(
    "/channels/{channel_id}/analytics",
    tags=["analytics"],
    operation_id="get_channel_analytics",
    dependencies=[Depends(read_rate_limit)],
)
def get_channel_analytics(channel_id: str, repository: DataRepository) -> AnalyticsResponse:
    _require_channel(repository, channel_id)
    analytics = repository.get_channel_analytics(channel_id)
    if analytics is None:
        analytics = repository.recompute_channel_analytics(channel_id)
    return AnalyticsResponse(analytics=_analytics_view(analytics))


@router.post(
    "/channels/{channel_id}/calculate-shorts",
    tags=["analytics"],
    operation_id="calculate_channel_shorts",
    dependencies=[Depends(fetch_rate_limit)],
)
def calculate_channel_shorts(channel_id: str, repository: DataRepository) -> AnalyticsResponse:
    analytics = repository.recompute_channel_analytics(channel_id)
    return AnalyticsResponse(analytics=_analytics_view(analytics))


@router.get(
    "/videos/{video_id}",
    tags=["videos"],
    operation_id="get_video",
    dependencies=[Depends(read_rate_limit)],
)
def get_video(video_id: str, repository: DataRepository) -> VideoResponse:
    video = repository.get_video(video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return VideoResponse(video=_video_view(video))


@router.get(
    "/jobs",
    tags=["jobs"],
    operation_id="list_jobs",
    dependencies=[Depends(read_rate_limit)],
)
def list_jobs(
    queue: Queue,
    status: Annotated[str | None, Query()] = None,
    channel_id: Annotated[str | None, Query(alias="channelId")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> JobListResponse:
    if status is not None and status not in JOB_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"status must be one of: {', '.join(sorted(JOB_STATUSES))}",
        )
    jobs = queue.list_jobs(status=status, channel_id=channel_id, limit=limit)
    return JobListResponse(jobs=[_job_view(job) for job in jobs], count=len(jobs))


@router.get(
    "/jobs/{job_id}",
    tags=["jobs"],
    operation_id="get_job",
    dependencies=[Depends(read_rate_limit)],
)
def get_job(job_id: str, queue: Queue) -> JobStatusResponse:
    job = queue.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse(job=_job_view(job))


def _require_channel(repository: YouTubeDataRepository, channel_id: str) -> StoredChannel:
    channel = repository.get_channel(channel_id)
    if channel is None:
        raise HTTPException(status_code=404, detail="Channel not found")
    return channel


def _job_accepted(job: Job, *, message: str) -> JobAcceptedResponse:
    return JobAcceptedResponse(
        job_id=job.job_id,
        job_type=job.job_type,
        channel_id=job.channel_id,
        status="pending",
        message=message,
    )


def _job_view(job: Job) -> JobView:
    return JobView.model_validate(
        {
            "id": job.job_id,
            "job_type": job.job_type,
            "channel_id": job.channel_id,
            "status": job.status,
            "priority": job.priority,
            "progress": job.progress,
            "attempts": job.attempts,
            "options": job.options,
            "created_at": job.created_at,
            "started_at": job.started_at,
            "completed_at": job.completed_at,
            "error_message": job.error_message,
        }
    )


def _channel_view(channel: StoredChannel) -> ChannelView:
    return ChannelView.model_validate(asdict(channel))


def _video_view(video: StoredVideo) -> VideoView:
    fields = asdict(video)
    fields["tags"] = list(video.tags)
    fields["engagement_rate"] = engagement_rate(
        view_count=video.view_count,
        like_count=video.like_count,
        comment_count=video.comment_count,
    )
    fields["length_category"] = length_category(video.duration_seconds)
    return VideoView.model_validate(fields)


def _analytics_view(analytics: ChannelAnalytics) -> AnalyticsView:
    return AnalyticsView.model_validate(asdict(analytics))
