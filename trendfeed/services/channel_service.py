from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from trendfeed.errors import (
    ChannelNotFoundError,
    InvalidRequestError,
    PlatformError,
    SubscriptionNotFoundError,
)
from trendfeed.repositories.channel_repository import (
    ChannelHistoryRecord,
    ChannelRecord,
    ChannelRepository,
    ListQuery,
    Page,
    SubscriptionRecord,
)
from trendfeed.services.credential_selector import CredentialSelector
from trendfeed.services.reports import BatchReport, ItemOutcome
from trendfeed.services.youtube_fetch_service import YouTubeFetchService
from trendfeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("trendfeed.channels")

MAX_BULK_ITEMS = 10


@dataclass(frozen=True)
class BulkUnsubscribeResult:
    deleted_ids: list[int]
    failed_ids: list[int]

    @property
    def deleted(self) -> int:
        return len(self.deleted_ids)


class ChannelService:
    def __init__(
        self,
        *,
        channel_repository: ChannelRepository,
        fetch_service: YouTubeFetchService,
        selector: CredentialSelector,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._channels = channel_repository
        self._fetch = fetch_service
        self._selector = selector
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def subscribe(
        self,
        user_id: str,
        *,
        handle: str | None = None,
        channel_id: str | None = None,
    ) -> SubscriptionRecord:
        """Track a channel (looking it up on YouTube if needed) and add it to the user's feed."""
        handle = (handle or "").strip() or None
        channel_id = (channel_id or "").strip() or None
        if (handle is None) == (channel_id is None):
            raise InvalidRequestError("Provide exactly one of handle or channel_id.")

        record = (
            self._channels.get_by_handle(handle)
            if handle is not None
            else self._channels.get_by_channel_id(channel_id or "")
        )
        registered = False
        if record is None:
            record = self._register_from_platform(user_id, handle=handle, channel_id=channel_id)
            registered = True

        subscription = self._channels.subscribe(user_id, record.id)
        self._telemetry.emit(
            "channels.subscribe",
            channel_id=record.channel_id,
            registered=registered,
        )
        return subscription

    def subscribe_many(self, user_id: str, handles: Sequence[str]) -> BatchReport[SubscriptionRecord]:
        """Subscribe to each handle (or tracked channel id) independently.

        An unknown handle or a platform failure is reported for that entry only;
        running out of server quota still aborts the whole batch.
        """
        entries = list(dict.fromkeys(entry.strip() for entry in handles if entry.strip()))
        if not entries:
            raise InvalidRequestError("Provide at least one handle.")
        if len(entries) > MAX_BULK_ITEMS:
            raise InvalidRequestError(f"At most {MAX_BULK_ITEMS} handles per request.")

        report: BatchReport[SubscriptionRecord] = BatchReport()
        for entry in entries:
            tracked = self._channels.get_by_channel_id(entry)
            try:
                subscription = (
                    self._channels.subscribe(user_id, tracked.id)
                    if tracked is not None
                    else self.subscribe(user_id, handle=entry)
                )
            except (ChannelNotFoundError, PlatformError) as exc:
                LOGGER.info("bulk subscribe entry failed entry=%s code=%s", entry, exc.code)
                report.add(ItemOutcome.failed(entry, exc.code, exc.message))
                continue
            report.add(ItemOutcome.success(entry, subscription))
        return report

    def unsubscribe(self, user_id: str, channel_id: str) -> None:
        record = self.get_channel(channel_id)
        if not self._channels.unsubscribe(user_id, record.id):
            raise ChannelNotFoundError(f"You are not subscribed to channel {channel_id}.")

    def unsubscribe_many(self, user_id: str, subscription_ids: Sequence[int]) -> BulkUnsubscribeResult:
        requested = list(dict.fromkeys(subscription_ids))
        if not requested:
            raise InvalidRequestError("Provide at least one subscription id.")
        if len(requested) > MAX_BULK_ITEMS:
            raise InvalidRequestError(f"At most {MAX_BULK_ITEMS} subscription ids per request.")

        deleted_ids = self._channels.unsubscribe_many(user_id, requested)
        if not deleted_ids:
            raise SubscriptionNotFoundError("None of the subscriptions belong to you.")
        deleted = set(deleted_ids)
        return BulkUnsubscribeResult(
            deleted_ids=deleted_ids,
            failed_ids=[subscription_id for subscription_id in requested if subscription_id not in deleted],
        )

    def list_subscriptions(self, user_id: str, query: ListQuery | None = None) -> Page[SubscriptionRecord]:
        return self._channels.page_subscriptions(user_id, query or ListQuery())

    def list_channels(self, query: ListQuery | None = None) -> Page[ChannelRecord]:
        return self._channels.page_channels(query or ListQuery())

    def get_channel(self, channel_id: str) -> ChannelRecord:
        record = self._channels.get_by_channel_id(channel_id)
        if record is None:
            raise ChannelNotFoundError(f"Channel {channel_id} is not tracked.")
        return record

    def channel_history(self, channel_id: str) -> tuple[ChannelRecord, list[ChannelHistoryRecord]]:
        record = self.get_channel(channel_id)
        return record, self._channels.list_history(record.id)

    def _register_from_platform(
        self,
        user_id: str,
        *,
        handle: str | None,
        channel_id: str | None,
    ) -> ChannelRecord:
        if handle is not None:
            lookup = self._selector.run_with_server_credential(
                lambda lease: self._fetch.fetch_channels_for_registration(lease, handles=[handle]),
                on_behalf_of_user=user_id,
            )
        else:
            lookup = self._selector.run_with_server_credential(
                lambda lease: self._fetch.fetch_channels_for_registration(lease, ids=[channel_id or ""]),
                on_behalf_of_user=user_id,
            )
        if not lookup.items:
            raise ChannelNotFoundError(f"No YouTube channel matches {handle or channel_id}.")

        entry = lookup.items[0]
        record = self._channels.register(
            entry.channel.to_snapshot(),
            last_video_uploaded_at=entry.last_video_uploaded_at,
        )
        LOGGER.info(
            "channel registered channel_id=%s handle=%s last_upload=%s",
            record.channel_id,
            record.handle,
            record.last_video_uploaded_at,
        )
        return record
