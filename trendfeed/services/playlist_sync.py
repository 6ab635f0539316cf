from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from trendfeed.services.credential_selector import CredentialLease
from trendfeed.services.youtube_fetch_service import MAX_ITEMS_PER_CALL, YouTubeFetchService

LOGGER = logging.getLogger("trendfeed.playlist_sync")

PlaylistSyncStopReason = Literal["watermark", "exhausted", "page_limit", "cancelled"]


@dataclass(frozen=True)
class PlaylistSyncPage:
    page_number: int
    video_ids: list[str]
    units_used: int
    fetched: bool
    # Set on the last page of a walk.
    stop_reason: PlaylistSyncStopReason | None = None


@dataclass(frozen=True)
class PlaylistSyncResult:
    video_ids: list[str]
    pages_fetched: int
    units_used: int
    stop_reason: PlaylistSyncStopReason


class IncrementalPlaylistSync:
    """Walks an uploads playlist newest-first until it reaches the watermark.

    Pages are fetched lazily: a consumer that stops iterating never pays for
    the next page.
    """

    def __init__(self, fetch_service: YouTubeFetchService) -> None:
        self._fetch_service = fetch_service

    def iter_pages(
        self,
        lease: CredentialLease,
        playlist_id: str,
        published_after: datetime,
        *,
        page_size: int = MAX_ITEMS_PER_CALL,
        max_pages: int | None = None,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> Iterator[PlaylistSyncPage]:
        page_token: str | None = None
        page_number = 0
        while True:
            if is_cancelled is not None and is_cancelled():
                yield PlaylistSyncPage(
                    page_number=page_number,
                    video_ids=[],
                    units_used=0,
                    fetched=False,
                    stop_reason="cancelled",
                )
                return

            page = self._fetch_service.fetch_playlist_page(
                lease,
                playlist_id,
                page_token=page_token,
                page_size=page_size,
            )
            page_number += 1

            video_ids: list[str] = []
            reached_watermark = False
            for entry in page.entries:
                if entry.published_at is not None and entry.published_at <= published_after:
                    reached_watermark = True
                    break
                video_ids.append(entry.video_id)

            stop_reason: PlaylistSyncStopReason | None = None
            if reached_watermark:
                stop_reason = "watermark"
            elif page.next_page_token is None:
                stop_reason = "exhausted"
            elif max_pages is not None and page_number >= max_pages:
                stop_reason = "page_limit"

            yield PlaylistSyncPage(
                page_number=page_number,
                video_ids=video_ids,
                units_used=page.units_used,
                fetched=True,
                stop_reason=stop_reason,
            )
            if stop_reason is not None:
                LOGGER.debug(
                    "playlist walk stopped playlist_id=%s pages=%s reason=%s",
                    playlist_id,
                    page_number,
                    stop_reason,
                )
                return
            page_token = page.next_page_token

    def collect(
        self,
        lease: CredentialLease,
        playlist_id: str,
        published_after: datetime,
        *,
        page_size: int = MAX_ITEMS_PER_CALL,
        max_pages: int | None = None,
        is_cancelled: Callable[[], bool] | None = None,
    ) -> PlaylistSyncResult:
        video_ids: list[str] = []
        pages_fetched = 0
        units_used = 0
        stop_reason: PlaylistSyncStopReason = "exhausted"
        for page in self.iter_pages(
            lease,
            playlist_id,
            published_after,
            page_size=page_size,
            max_pages=max_pages,
            is_cancelled=is_cancelled,
        ):
            video_ids.extend(page.video_ids)
            units_used += page.units_used
            if page.fetched:
                pages_fetched += 1
            if page.stop_reason is not None:
                stop_reason = page.stop_reason
        return PlaylistSyncResult(
            video_ids=video_ids,
            pages_fetched=pages_fetched,
            units_used=units_used,
            stop_reason=stop_reason,
        )
