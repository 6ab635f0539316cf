from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from time import monotonic, perf_counter
from typing import Literal

from trendfeed.errors import ChannelNotFoundError, PlatformError
from trendfeed.repositories.channel_repository import ChannelRecord, ChannelRepository
from trendfeed.repositories.common import utc_now
from trendfeed.services.credential_selector import CredentialLease, CredentialSelector
from trendfeed.services.playlist_sync import IncrementalPlaylistSync
from trendfeed.services.reports import BatchReport, ItemFailure, ItemOutcome
from trendfeed.services.video_filters import (
    VideoCriteria,
    format_duration,
    passes,
    views_per_hour,
)
from trendfeed.services.youtube_fetch_service import (
    PlatformChannel,
    PlatformVideo,
    SearchFilters,
    YouTubeFetchService,
)
from trendfeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("trendfeed.discovery")

DiscoveryStopReason = Literal[
    "completed",
    "max_results",
    "min_views",
    "exhausted",
    "page_limit",
    "cancelled",
]

CancelCheck = Callable[[], bool]


@dataclass(frozen=True)
class ChannelDiscoveryRequest:
    channel_ids: tuple[str, ...]
    days: int
    max_results: int
    criteria: VideoCriteria = field(default_factory=VideoCriteria)
    popular_only: bool = False


@dataclass(frozen=True)
class KeywordDiscoveryRequest:
    keyword: str
    days: int
    max_results: int
    criteria: VideoCriteria = field(default_factory=VideoCriteria)
    region_code: str | None = None
    relevance_language: str | None = None


@dataclass(frozen=True)
class ChannelInfo:
    handle: str | None
    subscriber_count: int
    video_count: int
    view_count: int
    region_code: str | None
    link: str
    published_at: str | None
    thumbnail_url: str | None


@dataclass(frozen=True)
class DiscoveredVideo:
    rank: int
    video_id: str
    channel_id: str | None
    channel_title: str
    title: str
    published_at: str
    view_count: int
    views_per_hour: float
    views_per_subscriber: float | None
    duration: str
    duration_seconds: int
    link: str
    thumbnail_url: str | None
    like_count: int | None
    comment_count: int | None
    tags: tuple[str, ...]
    default_language: str | None
    default_audio_language: str | None
    channel: ChannelInfo | None


@dataclass(frozen=True)
class DiscoveryResult:
    videos: list[DiscoveredVideo]
    units_used: int
    pages_fetched: int
    stop_reason: DiscoveryStopReason
    cancelled: bool
    failures: list[ItemFailure]


@dataclass(frozen=True)
class _Candidate:
    video: PlatformVideo
    published_at: datetime
    vph: float


@dataclass
class _Tally:
    units_used: int = 0
    pages_fetched: int = 0
    cancelled: bool = False


def deadline_after(seconds: float) -> CancelCheck:
    expires_at = monotonic() + max(0.0, seconds)
    return lambda: monotonic() >= expires_at


def channel_link(channel_id: str) -> str:
    return f"https://www.youtube.com/channel/{channel_id}"


def video_link(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


class DiscoveryService:
    def __init__(
        self,
        *,
        fetch_service: YouTubeFetchService,
        selector: CredentialSelector,
        playlist_sync: IncrementalPlaylistSync,
        channel_repository: ChannelRepository,
        keyword_search_max_pages: int = 5,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._fetch = fetch_service
        self._selector = selector
        self._playlist_sync = playlist_sync
        self._channels = channel_repository
        self._keyword_search_max_pages = max(1, keyword_search_max_pages)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock

    def discover_by_channels(
        self,
        user_id: str,
        request: ChannelDiscoveryRequest,
        is_cancelled: CancelCheck | None = None,
    ) -> DiscoveryResult:
        """Trending uploads across a channel set, paid from the server credential pool.

        With `popular_only` each channel's whole window is read so its top
        `max_results` by VPH are exact; otherwise a channel stops at the first
        `max_results` passing uploads.
        """
        started_at = perf_counter()
        now = self._clock()
        watermark = now - timedelta(days=request.days)
        tally = _Tally()
        failures: list[ItemFailure] = []

        channel_ids = _unique(request.channel_ids)
        known = self._resolve_tracked_channels(user_id, channel_ids, tally, failures)

        report: BatchReport[list[_Candidate]] = BatchReport()
        for channel_id in channel_ids:
            if _cancelled(is_cancelled):
                tally.cancelled = True
                break
            record = known.get(channel_id)
            if record is None:
                continue
            if record.uploads_playlist_id is None:
                report.add(
                    ItemOutcome.failed(channel_id, "CHANNEL_NOT_FOUND", "Channel has no uploads playlist.")
                )
                continue

            playlist_id = record.uploads_playlist_id
            try:
                candidates = self._selector.run_with_server_credential(
                    lambda lease: self._collect_channel(
                        lease,
                        playlist_id=playlist_id,
                        watermark=watermark,
                        request=request,
                        now=now,
                        tally=tally,
                        is_cancelled=is_cancelled,
                    ),
                    on_behalf_of_user=user_id,
                )
            except PlatformError as exc:
                LOGGER.warning(
                    "channel discovery failed channel_id=%s code=%s detail=%s",
                    channel_id,
                    exc.code,
                    exc.message,
                )
                report.add(ItemOutcome.failed(channel_id, exc.code, exc.message))
                continue
            report.add(ItemOutcome.success(channel_id, candidates))

        merged = [candidate for candidates in report.succeeded for candidate in candidates]
        channel_infos = {
            record.channel_id: _channel_info_from_record(record) for record in known.values()
        }
        videos = _rank(merged, channel_infos)
        failures.extend(report.failures)
        stop_reason: DiscoveryStopReason = "cancelled" if tally.cancelled else "completed"

        self._telemetry.emit(
            "discovery.channels.finish",
            channel_count=len(channel_ids),
            result_count=len(videos),
            failure_count=len(failures),
            units_used=tally.units_used,
            pages_fetched=tally.pages_fetched,
            stop_reason=stop_reason,
            popular_only=request.popular_only,
            duration_ms=int((perf_counter() - started_at) * 1000),
        )
        return DiscoveryResult(
            videos=videos,
            units_used=tally.units_used,
            pages_fetched=tally.pages_fetched,
            stop_reason=stop_reason,
            cancelled=tally.cancelled,
            failures=failures,
        )

    def discover_by_keyword(
        self,
        user_id: str,
        request: KeywordDiscoveryRequest,
        is_cancelled: CancelCheck | None = None,
    ) -> DiscoveryResult:
        """Trending videos for a keyword, paid from the caller's own credential.

        Search results arrive in view-count order, so the first record under
        `min_views` ends the walk: nothing after it can pass. With a VPH threshold
        the walk also ends once `max_results` qualifying records are collected.
        """
        started_at = perf_counter()
        now = self._clock()
        lease = self._selector.select_user(user_id)
        criteria = request.criteria
        vph_threshold = criteria.min_views_per_hour > 0
        filters = SearchFilters(
            video_duration=criteria.video_duration,
            published_after=now - timedelta(days=request.days),
            region_code=request.region_code,
            relevance_language=request.relevance_language,
        )
        tally = _Tally()
        failures: list[ItemFailure] = []
        collected: list[_Candidate] = []
        seen_ids: set[str] = set()
        page_token: str | None = None
        stop_reason: DiscoveryStopReason = "exhausted"

        while True:
            if _cancelled(is_cancelled):
                tally.cancelled = True
                stop_reason = "cancelled"
                break
            if tally.pages_fetched >= self._keyword_search_max_pages:
                stop_reason = "page_limit"
                break

            page = self._fetch.search_by_keyword(lease, request.keyword, filters, page_token)
            tally.pages_fetched += 1
            tally.units_used += page.units_used

            new_ids = [video_id for video_id in page.video_ids if video_id not in seen_ids]
            seen_ids.update(new_ids)
            below_min_views = False
            enough = False
            if new_ids:
                details = self._fetch.fetch_videos(lease, new_ids)
                tally.units_used += details.units_used
                by_id = {video.video_id: video for video in details.items}
                for video_id in new_ids:
                    video = by_id.get(video_id)
                    if video is None:
                        continue
                    if video.view_count < criteria.min_views:
                        below_min_views = True
                        break
                    candidate = _evaluate(video, criteria, now)
                    if candidate is None:
                        continue
                    collected.append(candidate)
                    # Without a VPH threshold a later page can still hold higher-VPH videos.
                    if vph_threshold and len(collected) >= request.max_results:
                        enough = True
                        break

            if enough:
                stop_reason = "max_results"
                break
            if below_min_views:
                stop_reason = "min_views"
                break
            if page.next_page_token is None:
                stop_reason = "exhausted"
                break
            page_token = page.next_page_token

        channel_infos = self._resolve_keyword_channels(lease, collected, tally, failures)
        videos = _rank(collected, channel_infos)[: request.max_results]

        self._telemetry.emit(
            "discovery.keyword.finish",
            result_count=len(videos),
            units_used=tally.units_used,
            pages_fetched=tally.pages_fetched,
            stop_reason=stop_reason,
            duration_ms=int((perf_counter() - started_at) * 1000),
        )
        return DiscoveryResult(
            videos=videos,
            units_used=tally.units_used,
            pages_fetched=tally.pages_fetched,
            stop_reason=stop_reason,
            cancelled=tally.cancelled,
            failures=failures,
        )

    def _collect_channel(
        self,
        lease: CredentialLease,
        *,
        playlist_id: str,
        watermark: datetime,
        request: ChannelDiscoveryRequest,
        now: datetime,
        tally: _Tally,
        is_cancelled: CancelCheck | None,
    ) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        for page in self._playlist_sync.iter_pages(
            lease,
            playlist_id,
            watermark,
            is_cancelled=is_cancelled,
        ):
            tally.units_used += page.units_used
            if page.fetched:
                tally.pages_fetched += 1
            if page.stop_reason == "cancelled":
                tally.cancelled = True
                break
            if not page.video_ids:
                continue

            details = self._fetch.fetch_videos(lease, page.video_ids)
            tally.units_used += details.units_used
            by_id = {video.video_id: video for video in details.items}
            for video_id in page.video_ids:
                video = by_id.get(video_id)
                if video is None:
                    continue
                candidate = _evaluate(video, request.criteria, now)
                if candidate is None:
                    continue
                candidates.append(candidate)
                if not request.popular_only and len(candidates) >= request.max_results:
                    return candidates

        if request.popular_only:
            candidates.sort(key=lambda candidate: candidate.vph, reverse=True)
            return candidates[: request.max_results]
        return candidates

    def _resolve_tracked_channels(
        self,
        user_id: str,
        channel_ids: list[str],
        tally: _Tally,
        failures: list[ItemFailure],
    ) -> dict[str, ChannelRecord]:
        known = self._channels.get_many_by_channel_ids(channel_ids)
        unknown = [channel_id for channel_id in channel_ids if channel_id not in known]
        if not unknown:
            return known

        try:
            lookup = self._selector.run_with_server_credential(
                lambda lease: self._fetch.fetch_channels_for_registration(lease, ids=unknown),
                on_behalf_of_user=user_id,
            )
        except PlatformError as exc:
            LOGGER.warning(
                "channel lookup failed count=%s code=%s detail=%s",
                len(unknown),
                exc.code,
                exc.message,
            )
            failures.extend(ItemFailure.from_error(channel_id, exc) for channel_id in unknown)
            return known

        tally.units_used += lookup.units_used
        for entry in lookup.items:
            known[entry.channel.channel_id] = self._channels.register(
                entry.channel.to_snapshot(),
                last_video_uploaded_at=entry.last_video_uploaded_at,
            )
        for channel_id in lookup.missing_ids:
            failures.append(
                ItemFailure.from_error(
                    channel_id,
                    ChannelNotFoundError(f"Channel {channel_id} does not exist."),
                )
            )
        return known

    def _resolve_keyword_channels(
        self,
        lease: CredentialLease,
        candidates: Sequence[_Candidate],
        tally: _Tally,
        failures: list[ItemFailure],
    ) -> dict[str, ChannelInfo]:
        channel_ids = _unique(
            candidate.video.channel_id
            for candidate in candidates
            if candidate.video.channel_id is not None
        )
        tracked = self._channels.get_many_by_channel_ids(channel_ids)
        infos = {
            channel_id: _channel_info_from_record(record) for channel_id, record in tracked.items()
        }
        untracked = [channel_id for channel_id in channel_ids if channel_id not in tracked]
        if not untracked or tally.cancelled:
            return infos

        try:
            lookup = self._fetch.fetch_channels(lease, ids=untracked)
        except PlatformError as exc:
            LOGGER.warning(
                "channel metadata lookup failed count=%s code=%s detail=%s",
                len(untracked),
                exc.code,
                exc.message,
            )
            failures.extend(ItemFailure.from_error(channel_id, exc) for channel_id in untracked)
            return infos

        tally.units_used += lookup.units_used
        for channel in lookup.items:
            infos[channel.channel_id] = _channel_info_from_platform(channel)
        return infos


def _evaluate(video: PlatformVideo, criteria: VideoCriteria, now: datetime) -> _Candidate | None:
    if video.published_at is None:
        return None
    vph = views_per_hour(video.view_count, video.published_at, now)
    if not passes(
        view_count=video.view_count,
        vph=vph,
        duration_seconds=video.duration_seconds,
        criteria=criteria,
    ):
        return None
    return _Candidate(video=video, published_at=video.published_at, vph=vph)


def _rank(
    candidates: Sequence[_Candidate],
    channel_infos: dict[str, ChannelInfo],
) -> list[DiscoveredVideo]:
    ordered = sorted(candidates, key=lambda candidate: candidate.vph, reverse=True)
    return [
        _to_discovered(rank, candidate, channel_infos)
        for rank, candidate in enumerate(ordered, start=1)
    ]


def _to_discovered(
    rank: int,
    candidate: _Candidate,
    channel_infos: dict[str, ChannelInfo],
) -> DiscoveredVideo:
    video = candidate.video
    channel = channel_infos.get(video.channel_id) if video.channel_id is not None else None
    subscribers = channel.subscriber_count if channel is not None else 0
    return DiscoveredVideo(
        rank=rank,
        video_id=video.video_id,
        channel_id=video.channel_id,
        channel_title=video.channel_title or "",
        title=video.title,
        published_at=candidate.published_at.isoformat(),
        view_count=video.view_count,
        views_per_hour=candidate.vph,
        views_per_subscriber=video.view_count / subscribers if subscribers > 0 else None,
        duration=format_duration(video.duration_seconds),
        duration_seconds=video.duration_seconds,
        link=video_link(video.video_id),
        thumbnail_url=video.thumbnail_url,
        like_count=video.like_count,
        comment_count=video.comment_count,
        tags=video.tags,
        default_language=video.default_language,
        default_audio_language=video.default_audio_language,
        channel=channel,
    )


def _channel_info_from_record(record: ChannelRecord) -> ChannelInfo:
    return ChannelInfo(
        handle=record.handle,
        subscriber_count=record.subscriber_count,
        video_count=record.video_count,
        view_count=record.view_count,
        region_code=record.region_code,
        link=channel_link(record.channel_id),
        published_at=record.published_at,
        thumbnail_url=record.thumbnail_url,
    )


def _channel_info_from_platform(channel: PlatformChannel) -> ChannelInfo:
    return ChannelInfo(
        handle=channel.handle,
        subscriber_count=channel.subscriber_count,
        video_count=channel.video_count,
        view_count=channel.view_count,
        region_code=channel.region_code,
        link=channel_link(channel.channel_id),
        published_at=channel.published_at,
        thumbnail_url=channel.thumbnail_url,
    )


def _cancelled(is_cancelled: CancelCheck | None) -> bool:
    return is_cancelled is not None and is_cancelled()


def _unique(values: Iterable[str]) -> list[str]:
    unique: list[str] = []
    seen: set[str] = set()
    for raw_value in values:
        value = raw_value.strip()
        if not value or value in seen:
            continue
        seen.add(value)
        unique.append(value)
    return unique
