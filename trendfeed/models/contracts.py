from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from trendfeed.repositories.channel_repository import (
    ChannelHistoryRecord,
    ChannelRecord,
    Page,
    SubscriptionRecord,
)
from trendfeed.repositories.credential_repository import CredentialRecord
from trendfeed.repositories.quota_ledger_repository import QuotaResetResult
from trendfeed.services.channel_refresh_service import RefreshReport
from trendfeed.services.channel_service import MAX_BULK_ITEMS, BulkUnsubscribeResult
from trendfeed.services.credential_service import UserUsageReport
from trendfeed.services.discovery_service import (
    ChannelDiscoveryRequest,
    DiscoveredVideo,
    DiscoveryResult,
    KeywordDiscoveryRequest,
)
from trendfeed.services.reports import BatchReport, ItemFailure
from trendfeed.services.video_filters import VideoCriteria
from trendfeed.telemetry import key_hint

VideoDuration = Literal["short", "medium", "long", "all"]


class _RequestModel(BaseModel):
    # Clients may send either snake_case or camelCase field names.
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class _DiscoveryFilters(_RequestModel):
    days: int = Field(default=7, ge=1, le=365)
    max_results: int = Field(default=20, ge=1, le=50)
    min_views: int = Field(default=0, ge=0)
    min_views_per_hour: float = Field(default=0.0, ge=0)
    video_duration: VideoDuration = "all"

    def criteria(self) -> VideoCriteria:
        return VideoCriteria(
            min_views=self.min_views,
            min_views_per_hour=self.min_views_per_hour,
            video_duration=self.video_duration,
        )


class ChannelDiscoveryBody(_DiscoveryFilters):
    channel_ids: list[str] = Field(min_length=1, max_length=200)
    popular_only: bool = False

    @field_validator("channel_ids")
    @classmethod
    def _strip_channel_ids(cls, value: list[str]) -> list[str]:
        stripped = [channel_id.strip() for channel_id in value if channel_id.strip()]
        if not stripped:
            raise ValueError("channel_ids must contain at least one non-empty id")
        return stripped

    def to_request(self) -> ChannelDiscoveryRequest:
        return ChannelDiscoveryRequest(
            channel_ids=tuple(self.channel_ids),
            days=self.days,
            max_results=self.max_results,
            criteria=self.criteria(),
            popular_only=self.popular_only,
        )


class KeywordDiscoveryBody(_DiscoveryFilters):
    keyword: str = Field(min_length=1, max_length=200)
    region_code: str | None = Field(default=None, min_length=2, max_length=2)
    relevance_language: str | None = None

    @field_validator("keyword")
    @classmethod
    def _strip_keyword(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("keyword must not be blank")
        return stripped

    def to_request(self) -> KeywordDiscoveryRequest:
        return KeywordDiscoveryRequest(
            keyword=self.keyword,
            days=self.days,
            max_results=self.max_results,
            criteria=self.criteria(),
            region_code=self.region_code.upper() if self.region_code else None,
            relevance_language=self.relevance_language,
        )


class SubscribeChannelBody(_RequestModel):
    handle: str | None = None
    channel_id: str | None = None


class BulkSubscribeBody(_RequestModel):
    handles: list[str] = Field(min_length=1, max_length=MAX_BULK_ITEMS)


class BulkUnsubscribeBody(_RequestModel):
    subscription_ids: list[int] = Field(min_length=1, max_length=MAX_BULK_ITEMS)


class UserApiKeyBody(_RequestModel):
    api_key: str


class ServerApiKeyBody(_RequestModel):
    name: str = Field(min_length=1, max_length=100)
    api_key: str
    is_active: bool = True


class ErrorBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    message: str
    retryable: bool = False


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: Literal[False] = False
    error: ErrorBody


class ItemFailureOut(BaseModel):
    item_id: str
    code: str
    message: str


class ChannelInfoOut(BaseModel):
    handle: str | None
    subscriber_count: int
    video_count: int
    view_count: int
    region_code: str | None
    link: str
    published_at: str | None
    thumbnail_url: str | None


class DiscoveredVideoOut(BaseModel):
    rank: int
    id: str
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
    tags: list[str]
    default_language: str | None
    default_audio_language: str | None
    channel: ChannelInfoOut | None


class DiscoveryOut(BaseModel):
    videos: list[DiscoveredVideoOut]
    units_used: int
    pages_fetched: int
    stop_reason: str
    cancelled: bool
    failures: list[ItemFailureOut]


class DiscoveryResponse(BaseModel):
    ok: Literal[True] = True
    result: DiscoveryOut


class ChannelOut(BaseModel):
    id: int
    channel_id: str
    handle: str | None
    name: str
    description: str | None
    thumbnail_url: str | None
    region_code: str | None
    default_language: str | None
    video_count: int
    view_count: int
    subscriber_count: int
    uploads_playlist_id: str | None
    published_at: str | None
    last_video_uploaded_at: str | None
    fetched_at: str
    link: str


class ChannelHistoryOut(BaseModel):
    video_count: int
    view_count: int
    subscriber_count: int
    created_at: str


class ChannelHistoryResponse(BaseModel):
    ok: Literal[True] = True
    channel: ChannelOut
    history: list[ChannelHistoryOut]


class ChannelResponse(BaseModel):
    ok: Literal[True] = True
    channel: ChannelOut


class ChannelListResponse(BaseModel):
    ok: Literal[True] = True
    channels: list[ChannelOut]
    next_cursor: int | None
    has_next: bool


class SubscriptionOut(BaseModel):
    id: int
    subscribed_at: str
    channel: ChannelOut


class SubscriptionResponse(BaseModel):
    ok: Literal[True] = True
    subscription: SubscriptionOut


class SubscriptionListResponse(BaseModel):
    ok: Literal[True] = True
    subscriptions: list[SubscriptionOut]
    next_cursor: int | None
    has_next: bool


class BulkSubscribeResponse(BaseModel):
    ok: Literal[True] = True
    subscriptions: list[SubscriptionOut]
    failures: list[ItemFailureOut]


class BulkUnsubscribeResponse(BaseModel):
    ok: Literal[True] = True
    deleted: int
    deleted_ids: list[int]
    failed_ids: list[int]


class CredentialOut(BaseModel):
    """Credential view; the key itself is never echoed back, only its last characters."""

    id: int
    owner_type: str
    name: str | None
    key_hint: str
    is_active: bool
    usage: int
    updated_at: str


class CredentialResponse(BaseModel):
    ok: Literal[True] = True
    credential: CredentialOut


class ServerUsageResponse(BaseModel):
    ok: Literal[True] = True
    credentials: list[CredentialOut]


class UserServerUsageOut(BaseModel):
    credential_id: int
    credential_name: str | None
    usage: int
    user_daily_limit: int


class UserUsageResponse(BaseModel):
    ok: Literal[True] = True
    usage_date: str
    daily_limit: int
    personal_credential: CredentialOut | None
    server_usage: list[UserServerUsageOut]


class QuotaResetResponse(BaseModel):
    ok: Literal[True] = True
    server_count: int
    user_count: int


class RefreshResponse(BaseModel):
    ok: Literal[True] = True
    candidates: int
    refreshed: int
    skipped_fresh: int
    units_used: int
    failures: list[ItemFailureOut]


class OkResponse(BaseModel):
    ok: Literal[True] = True


def failure_out(failure: ItemFailure) -> ItemFailureOut:
    return ItemFailureOut(item_id=failure.item_id, code=failure.code, message=failure.message)


def discovered_video_out(video: DiscoveredVideo) -> DiscoveredVideoOut:
    channel = video.channel
    return DiscoveredVideoOut(
        rank=video.rank,
        id=video.video_id,
        channel_id=video.channel_id,
        channel_title=video.channel_title,
        title=video.title,
        published_at=video.published_at,
        view_count=video.view_count,
        views_per_hour=video.views_per_hour,
        views_per_subscriber=video.views_per_subscriber,
        duration=video.duration,
        duration_seconds=video.duration_seconds,
        link=video.link,
        thumbnail_url=video.thumbnail_url,
        like_count=video.like_count,
        comment_count=video.comment_count,
        tags=list(video.tags),
        default_language=video.default_language,
        default_audio_language=video.default_audio_language,
        channel=(
            ChannelInfoOut(
                handle=channel.handle,
                subscriber_count=channel.subscriber_count,
                video_count=channel.video_count,
                view_count=channel.view_count,
                region_code=channel.region_code,
                link=channel.link,
                published_at=channel.published_at,
                thumbnail_url=channel.thumbnail_url,
            )
            if channel is not None
            else None
        ),
    )


def discovery_response(result: DiscoveryResult) -> DiscoveryResponse:
    return DiscoveryResponse(
        result=DiscoveryOut(
            videos=[discovered_video_out(video) for video in result.videos],
            units_used=result.units_used,
            pages_fetched=result.pages_fetched,
            stop_reason=result.stop_reason,
            cancelled=result.cancelled,
            failures=[failure_out(failure) for failure in result.failures],
        )
    )


def channel_out(record: ChannelRecord) -> ChannelOut:
    return ChannelOut(
        id=record.id,
        channel_id=record.channel_id,
        handle=record.handle,
        name=record.name,
        description=record.description,
        thumbnail_url=record.thumbnail_url,
        region_code=record.region_code,
        default_language=record.default_language,
        video_count=record.video_count,
        view_count=record.view_count,
        subscriber_count=record.subscriber_count,
        uploads_playlist_id=record.uploads_playlist_id,
        published_at=record.published_at,
        last_video_uploaded_at=record.last_video_uploaded_at,
        fetched_at=record.fetched_at,
        link=f"https://www.youtube.com/channel/{record.channel_id}",
    )


def history_out(record: ChannelHistoryRecord) -> ChannelHistoryOut:
    return ChannelHistoryOut(
        video_count=record.video_count,
        view_count=record.view_count,
        subscriber_count=record.subscriber_count,
        created_at=record.created_at,
    )


def subscription_out(record: SubscriptionRecord) -> SubscriptionOut:
    return SubscriptionOut(
        id=record.id,
        subscribed_at=record.created_at,
        channel=channel_out(record.channel),
    )


def credential_out(record: CredentialRecord) -> CredentialOut:
    return CredentialOut(
        id=record.id,
        owner_type=record.owner_type,
        name=record.name,
        key_hint=key_hint(record.api_key),
        is_active=record.is_active,
        usage=record.usage,
        updated_at=record.updated_at,
    )


def user_usage_response(report: UserUsageReport) -> UserUsageResponse:
    personal = report.personal_credential
    return UserUsageResponse(
        usage_date=report.usage_date,
        daily_limit=report.daily_limit,
        personal_credential=credential_out(personal) if personal is not None else None,
        server_usage=[
            UserServerUsageOut(
                credential_id=usage.credential_id,
                credential_name=usage.credential_name,
                usage=usage.usage,
                user_daily_limit=usage.user_daily_limit,
            )
            for usage in report.server_usage
        ],
    )


def quota_reset_response(result: QuotaResetResult) -> QuotaResetResponse:
    return QuotaResetResponse(server_count=result.server_count, user_count=result.user_count)


def refresh_response(report: RefreshReport) -> RefreshResponse:
    return RefreshResponse(
        candidates=report.candidates,
        refreshed=report.refreshed,
        skipped_fresh=report.skipped_fresh,
        units_used=report.units_used,
        failures=[failure_out(failure) for failure in report.failures],
    )


def channel_list_response(page: Page[ChannelRecord]) -> ChannelListResponse:
    return ChannelListResponse(
        channels=[channel_out(record) for record in page.items],
        next_cursor=page.next_cursor,
        has_next=page.has_next,
    )


def subscription_list_response(page: Page[SubscriptionRecord]) -> SubscriptionListResponse:
    return SubscriptionListResponse(
        subscriptions=[subscription_out(record) for record in page.items],
        next_cursor=page.next_cursor,
        has_next=page.has_next,
    )


def bulk_subscribe_response(report: BatchReport[SubscriptionRecord]) -> BulkSubscribeResponse:
    return BulkSubscribeResponse(
        subscriptions=[subscription_out(record) for record in report.succeeded],
        failures=[failure_out(failure) for failure in report.failures],
    )


def bulk_unsubscribe_response(result: BulkUnsubscribeResult) -> BulkUnsubscribeResponse:
    return BulkUnsubscribeResponse(
        deleted=result.deleted,
        deleted_ids=result.deleted_ids,
        failed_ids=result.failed_ids,
    )
