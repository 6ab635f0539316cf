from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from time import perf_counter
from typing import Any, Generic, TypeVar, cast

from structlog.contextvars import bind_contextvars, reset_contextvars

from trendfeed.errors import (
    CredentialNotFoundError,
    PlatformApiError,
    QuotaExceededError,
    UserQuotaExceededError,
)
from trendfeed.repositories.channel_repository import ChannelSnapshot
from trendfeed.repositories.quota_ledger_repository import QuotaCharge, QuotaLedgerRepository
from trendfeed.services.credential_selector import CredentialLease
from trendfeed.services.video_filters import DurationBucket, parse_iso8601_duration_seconds
from trendfeed.services.youtube_client import YouTubeClient
from trendfeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("trendfeed.youtube")

MAX_ITEMS_PER_CALL = 50
CHANNELS_LIST_COST = 1
PLAYLIST_ITEMS_LIST_COST = 1
VIDEOS_LIST_COST = 1
SEARCH_LIST_COST = 100

T = TypeVar("T")


@dataclass(frozen=True)
class PlatformChannel:
    channel_id: str
    title: str
    handle: str | None
    description: str | None
    thumbnail_url: str | None
    region_code: str | None
    default_language: str | None
    published_at: str | None
    video_count: int
    view_count: int
    subscriber_count: int
    uploads_playlist_id: str | None

    def to_snapshot(self) -> ChannelSnapshot:
        return ChannelSnapshot(
            channel_id=self.channel_id,
            name=self.title,
            handle=self.handle,
            description=self.description,
            thumbnail_url=self.thumbnail_url,
            region_code=self.region_code,
            default_language=self.default_language,
            video_count=self.video_count,
            view_count=self.view_count,
            subscriber_count=self.subscriber_count,
            uploads_playlist_id=self.uploads_playlist_id,
            published_at=self.published_at,
        )


@dataclass(frozen=True)
class PlatformVideo:
    video_id: str
    channel_id: str | None
    channel_title: str | None
    title: str
    published_at: datetime | None
    view_count: int
    like_count: int | None
    comment_count: int | None
    duration_seconds: int
    tags: tuple[str, ...]
    thumbnail_url: str | None
    default_language: str | None
    default_audio_language: str | None


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    items: list[T]
    calls: int
    units_used: int
    missing_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class PlaylistEntry:
    video_id: str
    published_at: datetime | None


@dataclass(frozen=True)
class PlaylistPage:
    entries: list[PlaylistEntry]
    next_page_token: str | None
    units_used: int
    not_found: bool = False


@dataclass(frozen=True)
class SearchFilters:
    video_duration: DurationBucket = "all"
    published_after: datetime | None = None
    region_code: str | None = None
    relevance_language: str | None = None


@dataclass(frozen=True)
class SearchPage:
    video_ids: list[str]
    next_page_token: str | None
    units_used: int
    total_results: int | None = None


@dataclass(frozen=True)
class LatestUpload:
    published_at: str | None
    units_used: int


@dataclass(frozen=True)
class ChannelRegistration:
    channel: PlatformChannel
    last_video_uploaded_at: str | None


@dataclass
class _ChunkProgress:
    calls: int = 0
    units_used: int = 0
    payloads: list[dict[str, Any]] = field(default_factory=list)


class YouTubeFetchService:
    """Quota-metered access to the YouTube Data API.

    Each physical call is preceded by a read-only ledger check and followed by
    a ledger charge against the lease's credential. Chunked batches charge per
    completed chunk; a failure midway keeps the charges already made.
    """

    def __init__(
        self,
        client: YouTubeClient,
        ledger: QuotaLedgerRepository,
        *,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._client = client
        self._ledger = ledger
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def fetch_channels(
        self,
        lease: CredentialLease,
        *,
        ids: Sequence[str] | None = None,
        handles: Sequence[str] | None = None,
    ) -> FetchResult[PlatformChannel]:
        if (ids is None) == (handles is None):
            raise ValueError("fetch_channels needs exactly one of ids or handles")

        if ids is not None:
            unique_ids = _unique_nonempty(ids)
            progress = self._run_chunked(
                lease,
                endpoint="channels.list",
                cost=CHANNELS_LIST_COST,
                keys=unique_ids,
                request=lambda chunk: self._client.list_channels(lease.api_key, ids=chunk),
            )
            resolved = _parse_channels(progress.payloads)
            found = {channel.channel_id for channel in resolved}
            return FetchResult(
                items=resolved,
                calls=progress.calls,
                units_used=progress.units_used,
                missing_ids=tuple(channel_id for channel_id in unique_ids if channel_id not in found),
            )

        # forHandle resolves a single handle per request.
        assert handles is not None
        channels: list[PlatformChannel] = []
        missing: list[str] = []
        units_used = 0
        calls = 0
        for handle in _unique_nonempty(handles):
            payload = self._metered_call(
                lease,
                endpoint="channels.list",
                cost=CHANNELS_LIST_COST,
                request=lambda handle=handle: self._client.list_channels(
                    lease.api_key,
                    handle=handle,
                ),
            )
            calls += 1
            units_used += CHANNELS_LIST_COST
            parsed = _parse_channels([payload])
            if parsed:
                channels.extend(parsed)
            else:
                missing.append(handle)
        return FetchResult(
            items=channels,
            calls=calls,
            units_used=units_used,
            missing_ids=tuple(missing),
        )

    def fetch_channels_for_registration(
        self,
        lease: CredentialLease,
        *,
        ids: Sequence[str] | None = None,
        handles: Sequence[str] | None = None,
    ) -> FetchResult[ChannelRegistration]:
        """Channel lookup plus one latest-upload read for every channel found."""
        lookup = self.fetch_channels(lease, ids=ids, handles=handles)
        calls = lookup.calls
        units_used = lookup.units_used
        registrations: list[ChannelRegistration] = []
        for channel in lookup.items:
            latest_at: str | None = None
            if channel.uploads_playlist_id is not None:
                latest = self.fetch_latest_upload_at(lease, channel.uploads_playlist_id)
                calls += 1
                units_used += latest.units_used
                latest_at = latest.published_at
            registrations.append(ChannelRegistration(channel=channel, last_video_uploaded_at=latest_at))
        return FetchResult(
            items=registrations,
            calls=calls,
            units_used=units_used,
            missing_ids=lookup.missing_ids,
        )

    def fetch_videos(
        self,
        lease: CredentialLease,
        video_ids: Sequence[str],
    ) -> FetchResult[PlatformVideo]:
        unique_ids = _unique_nonempty(video_ids)
        progress = self._run_chunked(
            lease,
            endpoint="videos.list",
            cost=VIDEOS_LIST_COST,
            keys=unique_ids,
            request=lambda chunk: self._client.list_videos(lease.api_key, ids=chunk),
        )
        videos = _parse_videos(progress.payloads)
        found = {video.video_id for video in videos}
        return FetchResult(
            items=videos,
            calls=progress.calls,
            units_used=progress.units_used,
            missing_ids=tuple(video_id for video_id in unique_ids if video_id not in found),
        )

    def fetch_playlist_page(
        self,
        lease: CredentialLease,
        playlist_id: str,
        page_token: str | None = None,
        page_size: int = MAX_ITEMS_PER_CALL,
    ) -> PlaylistPage:
        max_results = max(1, min(page_size, MAX_ITEMS_PER_CALL))
        not_found = False

        def request() -> dict[str, Any]:
            nonlocal not_found
            try:
                return self._client.list_playlist_items(
                    lease.api_key,
                    playlist_id=playlist_id,
                    max_results=max_results,
                    page_token=page_token,
                )
            except PlatformApiError as exc:
                # A deleted or private uploads playlist reads as an empty, final page.
                if exc.http_status != 404:
                    raise
                not_found = True
                return {}

        payload = self._metered_call(
            lease,
            endpoint="playlistItems.list",
            cost=PLAYLIST_ITEMS_LIST_COST,
            request=request,
        )
        if not_found:
            LOGGER.info("playlist not found; treating as empty playlist_id=%s", playlist_id)
            return PlaylistPage(
                entries=[],
                next_page_token=None,
                units_used=PLAYLIST_ITEMS_LIST_COST,
                not_found=True,
            )

        entries: list[PlaylistEntry] = []
        for raw_item in _as_list(payload.get("items")):
            entry = _parse_playlist_entry(_as_dict(raw_item))
            if entry is not None:
                entries.append(entry)
        return PlaylistPage(
            entries=entries,
            next_page_token=_coerce_nonempty_string(payload.get("nextPageToken")),
            units_used=PLAYLIST_ITEMS_LIST_COST,
        )

    def fetch_latest_upload_at(self, lease: CredentialLease, playlist_id: str) -> LatestUpload:
        page = self.fetch_playlist_page(lease, playlist_id, page_size=1)
        latest = page.entries[0].published_at if page.entries else None
        return LatestUpload(
            published_at=latest.isoformat() if latest is not None else None,
            units_used=page.units_used,
        )

    def search_by_keyword(
        self,
        lease: CredentialLease,
        keyword: str,
        filters: SearchFilters,
        page_token: str | None = None,
    ) -> SearchPage:
        query: dict[str, Any] = {"q": keyword}
        if filters.video_duration != "all":
            query["videoDuration"] = filters.video_duration
        if filters.published_after is not None:
            query["publishedAfter"] = _rfc3339(filters.published_after)
        if filters.region_code:
            query["regionCode"] = filters.region_code
        if filters.relevance_language:
            query["relevanceLanguage"] = filters.relevance_language
        if page_token:
            query["pageToken"] = page_token

        payload = self._metered_call(
            lease,
            endpoint="search.list",
            cost=SEARCH_LIST_COST,
            request=lambda: self._client.search_videos(lease.api_key, query=query),
        )
        video_ids: list[str] = []
        for raw_item in _as_list(payload.get("items")):
            identifier = _as_dict(_as_dict(raw_item).get("id"))
            video_id = _coerce_nonempty_string(identifier.get("videoId"))
            if video_id is not None:
                video_ids.append(video_id)
        page_info = _as_dict(payload.get("pageInfo"))
        return SearchPage(
            video_ids=video_ids,
            next_page_token=_coerce_nonempty_string(payload.get("nextPageToken")),
            units_used=SEARCH_LIST_COST,
            total_results=_coerce_int(page_info.get("totalResults")),
        )

    def _run_chunked(
        self,
        lease: CredentialLease,
        *,
        endpoint: str,
        cost: int,
        keys: list[str],
        request: Callable[[list[str]], dict[str, Any]],
    ) -> _ChunkProgress:
        progress = _ChunkProgress()
        for start in range(0, len(keys), MAX_ITEMS_PER_CALL):
            chunk = keys[start : start + MAX_ITEMS_PER_CALL]
            payload = self._metered_call(
                lease,
                endpoint=endpoint,
                cost=cost,
                request=lambda chunk=chunk: request(chunk),
            )
            progress.calls += 1
            progress.units_used += cost
            progress.payloads.append(payload)
        return progress

    def _metered_call(
        self,
        lease: CredentialLease,
        *,
        endpoint: str,
        cost: int,
        request: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        _raise_for_rejection(
            self._ledger.check(lease.credential_id, cost, lease.on_behalf_of_user),
        )

        started_at = perf_counter()
        context_tokens = bind_contextvars(
            credential_id=lease.credential_id,
            credential_owner=lease.owner_type,
            youtube_endpoint=endpoint,
        )
        try:
            payload = request()
        except Exception as exc:
            self._telemetry.emit(
                "youtube.call.error",
                endpoint=endpoint,
                credential_id=lease.credential_id,
                duration_ms=int((perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        finally:
            reset_contextvars(**context_tokens)

        charge = self._ledger.charge(lease.credential_id, cost, lease.on_behalf_of_user)
        self._telemetry.emit(
            "youtube.call.finish",
            endpoint=endpoint,
            credential_id=lease.credential_id,
            owner_type=lease.owner_type,
            units=cost,
            duration_ms=int((perf_counter() - started_at) * 1000),
            charged=charge.committed,
        )
        _raise_for_rejection(charge)
        return payload


def _raise_for_rejection(charge: QuotaCharge) -> None:
    if charge.committed:
        return
    if charge.reason == "credential_missing":
        raise CredentialNotFoundError(f"Credential {charge.credential_id} no longer exists.")
    if charge.reason == "user_limit":
        raise UserQuotaExceededError(
            "Your daily allowance on the shared quota is used up.",
            credential_id=charge.credential_id,
            user_id=charge.user_id,
        )
    raise QuotaExceededError(
        "The daily quota for this credential is used up.",
        credential_id=charge.credential_id,
    )


def _parse_channels(payloads: list[dict[str, Any]]) -> list[PlatformChannel]:
    channels: list[PlatformChannel] = []
    for payload in payloads:
        for raw_item in _as_list(payload.get("items")):
            channel = _parse_channel(_as_dict(raw_item))
            if channel is not None:
                channels.append(channel)
    return channels


def _parse_channel(item: dict[str, Any]) -> PlatformChannel | None:
    channel_id = _coerce_nonempty_string(item.get("id"))
    if channel_id is None:
        return None
    snippet = _as_dict(item.get("snippet"))
    statistics = _as_dict(item.get("statistics"))
    related = _as_dict(_as_dict(item.get("contentDetails")).get("relatedPlaylists"))
    thumbnails = _extract_thumbnail_urls(snippet)
    return PlatformChannel(
        channel_id=channel_id,
        title=_coerce_nonempty_string(snippet.get("title")) or channel_id,
        handle=_coerce_nonempty_string(snippet.get("customUrl")),
        description=_coerce_nonempty_string(snippet.get("description")),
        thumbnail_url=thumbnails.get("high") or thumbnails.get("medium") or thumbnails.get("default"),
        region_code=_coerce_nonempty_string(snippet.get("country")),
        default_language=_coerce_nonempty_string(snippet.get("defaultLanguage")),
        published_at=_coerce_nonempty_string(snippet.get("publishedAt")),
        video_count=_coerce_int(statistics.get("videoCount")) or 0,
        view_count=_coerce_int(statistics.get("viewCount")) or 0,
        subscriber_count=_coerce_int(statistics.get("subscriberCount")) or 0,
        uploads_playlist_id=_coerce_nonempty_string(related.get("uploads")),
    )


def _parse_videos(payloads: list[dict[str, Any]]) -> list[PlatformVideo]:
    videos: list[PlatformVideo] = []
    for payload in payloads:
        for raw_item in _as_list(payload.get("items")):
            video = _parse_video(_as_dict(raw_item))
            if video is not None:
                videos.append(video)
    return videos


def _parse_video(item: dict[str, Any]) -> PlatformVideo | None:
    video_id = _coerce_nonempty_string(item.get("id"))
    if video_id is None:
        return None
    snippet = _as_dict(item.get("snippet"))
    statistics = _as_dict(item.get("statistics"))
    content_details = _as_dict(item.get("contentDetails"))
    thumbnails = _extract_thumbnail_urls(snippet)
    return PlatformVideo(
        video_id=video_id,
        channel_id=_coerce_nonempty_string(snippet.get("channelId")),
        channel_title=_coerce_nonempty_string(snippet.get("channelTitle")),
        title=_coerce_nonempty_string(snippet.get("title")) or video_id,
        published_at=_parse_platform_timestamp(snippet.get("publishedAt")),
        view_count=_coerce_int(statistics.get("viewCount")) or 0,
        like_count=_coerce_int(statistics.get("likeCount")),
        comment_count=_coerce_int(statistics.get("commentCount")),
        duration_seconds=parse_iso8601_duration_seconds(content_details.get("duration")) or 0,
        tags=_extract_string_list(snippet.get("tags")),
        thumbnail_url=thumbnails.get("maxres") or thumbnails.get("default"),
        default_language=_coerce_nonempty_string(snippet.get("defaultLanguage")),
        default_audio_language=_coerce_nonempty_string(snippet.get("defaultAudioLanguage")),
    )


def _parse_playlist_entry(item: dict[str, Any]) -> PlaylistEntry | None:
    snippet = _as_dict(item.get("snippet"))
    content_details = _as_dict(item.get("contentDetails"))
    video_id = _coerce_nonempty_string(content_details.get("videoId")) or _coerce_nonempty_string(
        _as_dict(snippet.get("resourceId")).get("videoId")
    )
    if video_id is None:
        return None
    published_at = _parse_platform_timestamp(
        content_details.get("videoPublishedAt")
    ) or _parse_platform_timestamp(snippet.get("publishedAt"))
    return PlaylistEntry(video_id=video_id, published_at=published_at)


def _parse_platform_timestamp(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, str) or not raw_value.strip():
        return None
    normalized = raw_value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _rfc3339(value: datetime) -> str:
    moment = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _unique_nonempty(values: Sequence[str]) -> list[str]:
    unique: list[str] = []
    seen: set[str] = set()
    for raw_value in values:
        value = raw_value.strip()
        if not value or value in seen:
            continue
        seen.add(value)
        unique.append(value)
    return unique


def _extract_thumbnail_urls(snippet: dict[str, Any]) -> dict[str, str]:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    urls: dict[str, str] = {}
    for quality, payload in thumbnails.items():
        url_value = _as_dict(payload).get("url")
        if isinstance(url_value, str) and url_value.strip():
            urls[quality] = url_value
    return urls


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


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return None
    return None


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
        return list(cast(list[Any], value))
    return []
