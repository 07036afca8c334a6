from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from threading import Lock
from typing import Any, cast
from http.client import HTTPException
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from backend.app.models.youtube_records import ChannelRecord, VideoRecord
from backend.app.services.quota_tracker import QuotaTracker
from backend.app.services.response_cache import CacheTtlPolicy, ResponseCache, build_cache_key
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("channel_insights.youtube")

DEFAULT_BASE_URL = "https://www.googleapis.com/youtube/v3"
DEFAULT_TIMEOUT_SECONDS = 10.0
QUOTA_RETRY_DELAY_SECONDS = 5.0

# YouTube Data API v3 quota costs per call.
SEARCH_COST = 100
LIST_COST = 1

MAX_RESULTS_PER_PAGE = 50
SHORTS_MAX_DURATION_SECONDS = 60
SHORTS_CATEGORY_ID = "23"
SHORTS_TAG_MARKER = "short"

ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
UPSTREAM_RATE_LIMIT_REASONS: frozenset[str] = frozenset(
    {
        "quotaExceeded",
        "dailyLimitExceeded",
        "rateLimitExceeded",
        "userRateLimitExceeded",
    }
)
_THUMBNAIL_PREFERENCE: tuple[str, ...] = ("high", "medium", "default")


class YouTubeApiError(Exception):
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class RateLimitedError(YouTubeApiError):
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: int = 60,
        scope: str = "upstream",
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, reason=reason)
        self.retry_after_seconds = max(1, retry_after_seconds)
        self.scope = scope


class QuotaExceededError(RateLimitedError):
    """The local quota budget refused the call, even after the single wait."""


class NotFoundError(YouTubeApiError):
    pass


class Upstream4xxError(YouTubeApiError):
    pass


class Upstream5xxError(YouTubeApiError):
    retryable = True


class NetworkError(YouTubeApiError):
    retryable = True


@dataclass(frozen=True)
class ListedVideo:
    video_id: str
    published_at: str | None


@dataclass(frozen=True)
class VideoListing:
    items: tuple[ListedVideo, ...]
    next_page_token: str | None


@dataclass(frozen=True)
class ClientUsage:
    network_requests: int
    cache_hits: int
    quota_units_consumed: int


class YouTubeApiClient:
    """YouTube Data API v3 access with quota, caching and error mapping.

    Every call goes through `request`: cache lookup first, then the shared
    quota tracker, then the network. Upstream failures are translated into
    the `YouTubeApiError` family; nothing from `urllib` leaks to callers.
    """

    def __init__(
        self,
        api_key: str,
        *,
        quota_tracker: QuotaTracker,
        cache: ResponseCache,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        quota_retry_delay_seconds: float = QUOTA_RETRY_DELAY_SECONDS,
        cache_ttl_policy: CacheTtlPolicy | None = None,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        if not api_key.strip():
            raise ValueError("YouTube API key must not be empty.")
        self._api_key = api_key.strip()
        self._quota_tracker = quota_tracker
        self._cache = cache
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(0.1, timeout_seconds)
        self._quota_retry_delay_seconds = max(0.0, quota_retry_delay_seconds)
        self._cache_ttl_policy = cache_ttl_policy or CacheTtlPolicy()
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._usage_lock = Lock()
        self._network_requests = 0
        self._cache_hits = 0
        self._quota_units_consumed = 0

    @property
    def quota_tracker(self) -> QuotaTracker:
        return self._quota_tracker

    def usage(self) -> ClientUsage:
        with self._usage_lock:
            return ClientUsage(
                network_requests=self._network_requests,
                cache_hits=self._cache_hits,
                quota_units_consumed=self._quota_units_consumed,
            )

    def request(
        self,
        endpoint: str,
        params: Mapping[str, Any],
        cost: int = LIST_COST,
    ) -> dict[str, Any]:
        normalized_endpoint = "/" + endpoint.strip().lstrip("/")
        cache_key = build_cache_key(normalized_endpoint, params)
        cached = self._cache.get(cache_key)
        if cached is not None:
            with self._usage_lock:
                self._cache_hits += 1
            LOGGER.debug("youtube api cache hit endpoint=%s", normalized_endpoint)
            return cast(dict[str, Any], cached)

        self._consume_quota(normalized_endpoint, cost)

        query = {
            str(name): str(value)
            for name, value in params.items()
            if value is not None and name != "key"
        }
        query["key"] = self._api_key
        url = f"{self._base_url}{normalized_endpoint}?{urlencode(query)}"

        started_at = time.perf_counter()
        with self._usage_lock:
            self._network_requests += 1
        try:
            status_code, payload = _fetch_json(url, timeout_seconds=self._timeout_seconds)
        except NetworkError as exc:
            self._emit_error(normalized_endpoint, started_at, exc)
            LOGGER.warning(
                "youtube api network failure endpoint=%s error=%s",
                normalized_endpoint,
                exc,
            )
            raise

        if not 200 <= status_code < 300:
            exc = _classify_http_error(status_code, payload)
            self._emit_error(normalized_endpoint, started_at, exc)
            LOGGER.warning(
                "youtube api error endpoint=%s status=%s reason=%s",
                normalized_endpoint,
                status_code,
                exc.reason,
            )
            raise exc

        if payload is None:
            exc = Upstream5xxError(
                f"YouTube API returned an unreadable body for {normalized_endpoint}",
                status_code=status_code,
            )
            self._emit_error(normalized_endpoint, started_at, exc)
            raise exc

        self._cache.set(cache_key, payload, self._cache_ttl_policy.ttl_for(normalized_endpoint))
        self._telemetry.emit(
            "youtube.api.request.finish",
            endpoint=normalized_endpoint,
            params=params,
            cost=cost,
            status_code=status_code,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )
        return payload

    def get_channel_info(self, channel_id: str) -> ChannelRecord:
        response = self.request(
            "/channels",
            {"part": "snippet,statistics,brandingSettings", "id": channel_id},
            cost=LIST_COST,
        )
        items = _as_list(response.get("items"))
        if not items:
            raise NotFoundError(f"Channel not found: {channel_id}", status_code=404)
        return _map_channel(_as_dict(items[0]), fallback_channel_id=channel_id)

    def list_channel_video_page(
        self,
        channel_id: str,
        *,
        page_token: str | None = None,
        max_results: int = MAX_RESULTS_PER_PAGE,
    ) -> VideoListing:
        response = self.request(
            "/search",
            {
                "part": "snippet",
                "channelId": channel_id,
                "type": "video",
                "order": "date",
                "maxResults": max(1, min(MAX_RESULTS_PER_PAGE, max_results)),
                "pageToken": page_token,
            },
            cost=SEARCH_COST,
        )

        items: list[ListedVideo] = []
        for raw_item in _as_list(response.get("items")):
            item = _as_dict(raw_item)
            item_id = _as_dict(item.get("id"))
            if item_id.get("kind") not in (None, "youtube#video"):
                continue
            video_id = _coerce_nonempty_string(item_id.get("videoId"))
            if video_id is None:
                continue
            snippet = _as_dict(item.get("snippet"))
            items.append(
                ListedVideo(
                    video_id=video_id,
                    published_at=_coerce_nonempty_string(snippet.get("publishedAt")),
                )
            )

        return VideoListing(
            items=tuple(items),
            next_page_token=_coerce_nonempty_string(response.get("nextPageToken")),
        )

    def get_video_details(self, video_ids: Iterable[str]) -> list[VideoRecord]:
        unique_ids = list(dict.fromkeys(video_id for video_id in video_ids if video_id))
        records: list[VideoRecord] = []
        for start in range(0, len(unique_ids), MAX_RESULTS_PER_PAGE):
            batch = unique_ids[start : start + MAX_RESULTS_PER_PAGE]
            response = self.request(
                "/videos",
                {
                    "part": "snippet,contentDetails,statistics",
                    "id": ",".join(batch),
                    "maxResults": len(batch),
                },
                cost=LIST_COST,
            )
            for raw_item in _as_list(response.get("items")):
                record = _map_video(_as_dict(raw_item))
                if record is not None:
                    records.append(record)
        return records

    def _consume_quota(self, endpoint: str, cost: int) -> None:
        decision = self._quota_tracker.try_consume(cost)
        if not decision.allowed:
            LOGGER.warning(
                "local quota refused call; retrying once endpoint=%s reason=%s delay=%s",
                endpoint,
                decision.reason,
                self._quota_retry_delay_seconds,
            )
            time.sleep(self._quota_retry_delay_seconds)
            decision = self._quota_tracker.try_consume(cost)

        if not decision.allowed:
            self._telemetry.emit(
                "youtube.api.request.quota_refused",
                endpoint=endpoint,
                cost=cost,
                reason=decision.reason,
            )
            raise QuotaExceededError(
                "Rate limit exceeded. Please try again later.",
                retry_after_seconds=decision.retry_after_seconds,
                scope=decision.reason or "local",
                reason=decision.reason,
            )
        with self._usage_lock:
            self._quota_units_consumed += decision.cost

    def _emit_error(self, endpoint: str, started_at: float, exc: YouTubeApiError) -> None:
        self._telemetry.emit(
            "youtube.api.request.error",
            endpoint=endpoint,
            status_code=exc.status_code,
            error_type=type(exc).__name__,
            reason=exc.reason,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )


def parse_duration_seconds(raw_value: object) -> int:
    """Decode an ISO-8601 duration such as `PT1H2M10S` into seconds.

    Missing components count as zero and anything unparseable yields 0.
    """
    if not isinstance(raw_value, str):
        return 0
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip().upper())
    if matched is None:
        return 0

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def is_short(
    *,
    duration_seconds: int,
    tags: Iterable[str] = (),
    category_id: str | None = None,
) -> bool:
    if duration_seconds <= SHORTS_MAX_DURATION_SECONDS:
        return True
    if any(SHORTS_TAG_MARKER in tag.lower() for tag in tags if isinstance(tag, str)):
        return True
    return category_id == SHORTS_CATEGORY_ID


def _fetch_json(url: str, *, timeout_seconds: float) -> tuple[int, dict[str, Any] | None]:
    request = Request(
        url,
        headers={
            "accept": "application/json",
            "user-agent": "channel-insights/0.1",
        },
        method="GET",
    )
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        status_code = int(exc.code)
        raw_body = _read_error_body(exc)
    except (URLError, HTTPException, OSError) as exc:
        raise NetworkError(f"Network error: {_describe_transport_error(exc)}") from exc

    return status_code, _parse_json_dict(raw_body)


def _read_error_body(exc: HTTPError) -> str:
    # A truncated error body still classifies by status code.
    try:
        return exc.read().decode("utf-8", errors="replace")
    except (HTTPException, OSError):
        LOGGER.debug("youtube api error body unreadable status=%s", exc.code, exc_info=True)
        return ""


def _describe_transport_error(exc: Exception) -> str:
    reason = getattr(exc, "reason", None)
    if reason is not None:
        return str(reason)
    return str(exc) or type(exc).__name__


def _parse_json_dict(raw_body: str) -> dict[str, Any] | None:
    if not raw_body.strip():
        return None
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return _as_dict(parsed)


def _classify_http_error(status_code: int, payload: dict[str, Any] | None) -> YouTubeApiError:
    error = _as_dict((payload or {}).get("error"))
    message = _coerce_nonempty_string(error.get("message")) or "Unknown error"
    reason = _extract_error_reason(error)
    summary = f"YouTube API Error: {status_code} - {message}"

    if status_code == 429 or (status_code == 403 and reason in UPSTREAM_RATE_LIMIT_REASONS):
        retry_after = 24 * 60 * 60 if reason in {"quotaExceeded", "dailyLimitExceeded"} else 60
        return RateLimitedError(
            summary,
            retry_after_seconds=retry_after,
            scope="upstream",
            status_code=status_code,
            reason=reason,
        )
    if status_code == 404:
        return NotFoundError(summary, status_code=status_code, reason=reason)
    if status_code >= 500:
        return Upstream5xxError(summary, status_code=status_code, reason=reason)
    return Upstream4xxError(summary, status_code=status_code, reason=reason)


def _extract_error_reason(error: dict[str, Any]) -> str | None:
    for raw_detail in _as_list(error.get("errors")):
        reason = _coerce_nonempty_string(_as_dict(raw_detail).get("reason"))
        if reason is not None:
            return reason
    return None


def _map_channel(item: dict[str, Any], *, fallback_channel_id: str) -> ChannelRecord:
    snippet = _as_dict(item.get("snippet"))
    statistics = _as_dict(item.get("statistics"))
    branding_image = _as_dict(_as_dict(item.get("brandingSettings")).get("image"))
    channel_id = _coerce_nonempty_string(item.get("id")) or fallback_channel_id
    return ChannelRecord(
        channel_id=channel_id,
        title=_coerce_nonempty_string(snippet.get("title")) or channel_id,
        description=_coerce_nonempty_string(snippet.get("description")),
        custom_url=_coerce_nonempty_string(snippet.get("customUrl")),
        thumbnail_url=_pick_thumbnail_url(snippet),
        banner_url=(
            _coerce_nonempty_string(branding_image.get("bannerExternalUrl"))
            or _coerce_nonempty_string(branding_image.get("bannerImageUrl"))
        ),
        subscriber_count=_coerce_int(statistics.get("subscriberCount")),
        video_count=_coerce_int(statistics.get("videoCount")),
        view_count=_coerce_int(statistics.get("viewCount")),
    )


def _map_video(item: dict[str, Any]) -> VideoRecord | None:
    video_id = _coerce_nonempty_string(item.get("id"))
    snippet = _as_dict(item.get("snippet"))
    channel_id = _coerce_nonempty_string(snippet.get("channelId"))
    if video_id is None or channel_id is None:
        return None

    content_details = _as_dict(item.get("contentDetails"))
    statistics = _as_dict(item.get("statistics"))
    duration_seconds = parse_duration_seconds(content_details.get("duration"))
    tags = _extract_string_list(snippet.get("tags"))
    category_id = _coerce_nonempty_string(snippet.get("categoryId"))
    return VideoRecord(
        video_id=video_id,
        channel_id=channel_id,
        title=_coerce_nonempty_string(snippet.get("title")) or video_id,
        description=_coerce_nonempty_string(snippet.get("description")),
        published_at=_coerce_nonempty_string(snippet.get("publishedAt")),
        duration_seconds=duration_seconds,
        view_count=_coerce_int(statistics.get("viewCount")),
        like_count=_coerce_int(statistics.get("likeCount")),
        comment_count=_coerce_int(statistics.get("commentCount")),
        thumbnail_url=_pick_thumbnail_url(snippet),
        is_short=is_short(duration_seconds=duration_seconds, tags=tags, category_id=category_id),
        category_id=category_id,
        tags=tags,
    )


def _pick_thumbnail_url(snippet: dict[str, Any]) -> str | None:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    for quality in _THUMBNAIL_PREFERENCE:
        url_value = _coerce_nonempty_string(_as_dict(thumbnails.get(quality)).get("url"))
        if url_value is not None:
            return url_value
    return None


def _extract_string_list(raw_value: object) -> tuple[str, ...]:
    if not isinstance(raw_value, list):
        return ()
    values: list[str] = []
    for raw_item in cast(list[Any], raw_value):
        if isinstance(raw_item, str) and raw_item.strip():
            values.append(raw_item)
    return tuple(values)


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return None


def _coerce_int(raw_value: object) -> int:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value.strip())
        except ValueError:
            return 0
    return 0


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
