from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from typing import Protocol

from backend.app.models.youtube_records import VideoRecord
from backend.app.services.youtube_client import MAX_RESULTS_PER_PAGE, VideoListing

LOGGER = logging.getLogger("channel_insights.pagination")


class VideoListingClient(Protocol):
    def list_channel_video_page(
        self,
        channel_id: str,
        *,
        page_token: str | None = None,
        max_results: int = MAX_RESULTS_PER_PAGE,
    ) -> VideoListing: ...

    def get_video_details(self, video_ids: Iterable[str]) -> list[VideoRecord]: ...


@dataclass(frozen=True)
class VideoPage:
    page_number: int
    videos: tuple[VideoRecord, ...]
    dropped_video_ids: tuple[str, ...]
    next_page_token: str | None


def iter_video_pages(
    client: VideoListingClient,
    channel_id: str,
    *,
    max_pages: int,
    page_size: int = MAX_RESULTS_PER_PAGE,
) -> Iterator[VideoPage]:
    """Walk a channel's uploads newest-first, one resolved page at a time.

    Stops after `max_pages` pages or when the listing has no continuation
    token. Listed items without a matching detail record are dropped.
    """
    page_token: str | None = None
    for page_number in range(1, max(1, max_pages) + 1):
        listing = client.list_channel_video_page(
            channel_id,
            page_token=page_token,
            max_results=page_size,
        )
        videos, dropped_ids = _resolve_listing(client, channel_id, listing)
        if dropped_ids:
            LOGGER.info(
                "dropped unresolved videos channel_id=%s page=%s count=%s video_ids=%s",
                channel_id,
                page_number,
                len(dropped_ids),
                ",".join(dropped_ids),
            )
        yield VideoPage(
            page_number=page_number,
            videos=videos,
            dropped_video_ids=dropped_ids,
            next_page_token=listing.next_page_token,
        )

        page_token = listing.next_page_token
        if page_token is None:
            return


def collect_pages(
    client: VideoListingClient,
    channel_id: str,
    max_pages: int,
    *,
    page_size: int = MAX_RESULTS_PER_PAGE,
) -> list[VideoRecord]:
    collected: list[VideoRecord] = []
    pages_read = 0
    for page in iter_video_pages(client, channel_id, max_pages=max_pages, page_size=page_size):
        collected.extend(page.videos)
        pages_read = page.page_number
    LOGGER.info(
        "collected channel videos channel_id=%s pages=%s videos=%s",
        channel_id,
        pages_read,
        len(collected),
    )
    return collected


def _resolve_listing(
    client: VideoListingClient,
    channel_id: str,
    listing: VideoListing,
) -> tuple[tuple[VideoRecord, ...], tuple[str, ...]]:
    listed_ids = list(dict.fromkeys(item.video_id for item in listing.items))
    if not listed_ids:
        return (), ()

    details_by_id: dict[str, VideoRecord] = {}
    for record in client.get_video_details(listed_ids):
        details_by_id[record.video_id] = record

    published_by_id = {item.video_id: item.published_at for item in listing.items}
    videos: list[VideoRecord] = []
    dropped: list[str] = []
    for video_id in listed_ids:
        record = details_by_id.get(video_id)
        if record is None or record.channel_id != channel_id:
            dropped.append(video_id)
            continue
        if record.published_at is None and published_by_id.get(video_id) is not None:
            record = replace(record, published_at=published_by_id[video_id])
        videos.append(record)
    return tuple(videos), tuple(dropped)
