from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from time import perf_counter
from zoneinfo import ZoneInfo

from trendfeed.errors import ChannelNotFoundError, PlatformError, TrendFeedError
from trendfeed.repositories.channel_repository import (
    ChannelRecord,
    ChannelRefreshUpdate,
    ChannelRepository,
)
from trendfeed.repositories.common import local_today, parse_timestamp, utc_now
from trendfeed.services.credential_selector import CredentialSelector
from trendfeed.services.reports import BatchReport, ItemFailure, ItemOutcome
from trendfeed.services.youtube_fetch_service import PlatformChannel, YouTubeFetchService
from trendfeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("trendfeed.channel_refresh")


@dataclass(frozen=True)
class RefreshReport:
    candidates: int
    refreshed: int
    skipped_fresh: int
    units_used: int
    failures: list[ItemFailure] = field(default_factory=list)


class ChannelRefreshService:
    """Daily re-synchronization of tracked channels into the history table."""

    def __init__(
        self,
        *,
        channel_repository: ChannelRepository,
        fetch_service: YouTubeFetchService,
        selector: CredentialSelector,
        timezone: str,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._channels = channel_repository
        self._fetch = fetch_service
        self._selector = selector
        self._timezone = timezone
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock

    def refresh_all_channels(self) -> RefreshReport:
        started_at = perf_counter()
        today = local_today(self._timezone, now=self._clock())
        channels = self._channels.list_channels()
        stale = [channel for channel in channels if not self._fetched_on(channel, today)]
        skipped_fresh = len(channels) - len(stale)
        if not stale:
            LOGGER.info("channel refresh skipped; every channel is fresh count=%s", len(channels))
            return RefreshReport(
                candidates=0,
                refreshed=0,
                skipped_fresh=skipped_fresh,
                units_used=0,
            )

        units_used = 0
        report: BatchReport[ChannelRefreshUpdate] = BatchReport()
        try:
            lookup = self._selector.run_with_server_credential(
                lambda lease: self._fetch.fetch_channels(
                    lease,
                    ids=[channel.channel_id for channel in stale],
                )
            )
        except PlatformError as exc:
            LOGGER.warning(
                "channel refresh batch lookup failed count=%s code=%s detail=%s",
                len(stale),
                exc.code,
                exc.message,
            )
            failures = [ItemFailure.from_error(channel.channel_id, exc) for channel in stale]
            return RefreshReport(
                candidates=len(stale),
                refreshed=0,
                skipped_fresh=skipped_fresh,
                units_used=0,
                failures=failures,
            )
        units_used += lookup.units_used

        fetched = {channel.channel_id: channel for channel in lookup.items}
        for channel in stale:
            platform_channel = fetched.get(channel.channel_id)
            if platform_channel is None:
                report.add(
                    ItemOutcome.failed(
                        channel.channel_id,
                        ChannelNotFoundError.code,
                        "Channel no longer exists on YouTube.",
                    )
                )
                continue
            outcome, spent = self._build_update(channel, platform_channel)
            units_used += spent
            report.add(outcome)

        updates = report.succeeded
        self._channels.apply_refresh(updates)
        for failure in report.failures:
            LOGGER.warning(
                "channel refresh skipped channel_id=%s code=%s detail=%s",
                failure.item_id,
                failure.code,
                failure.message,
            )

        result = RefreshReport(
            candidates=len(stale),
            refreshed=len(updates),
            skipped_fresh=skipped_fresh,
            units_used=units_used,
            failures=report.failures,
        )
        self._telemetry.emit(
            "channels.refresh.finish",
            candidates=result.candidates,
            refreshed=result.refreshed,
            failure_count=len(result.failures),
            units_used=result.units_used,
            duration_ms=int((perf_counter() - started_at) * 1000),
        )
        return result

    def _build_update(
        self,
        channel: ChannelRecord,
        platform_channel: PlatformChannel,
    ) -> tuple[ItemOutcome[ChannelRefreshUpdate], int]:
        snapshot = platform_channel.to_snapshot()
        playlist_id = snapshot.uploads_playlist_id
        # Only a changed upload count can move the latest-upload timestamp.
        if snapshot.video_count == channel.video_count or playlist_id is None:
            update = ChannelRefreshUpdate(
                channel_pk=channel.id,
                snapshot=snapshot,
                last_video_uploaded_at=None,
            )
            return ItemOutcome.success(channel.channel_id, update), 0

        try:
            latest = self._selector.run_with_server_credential(
                lambda lease: self._fetch.fetch_latest_upload_at(lease, playlist_id)
            )
        except TrendFeedError as exc:
            return ItemOutcome.failed(channel.channel_id, exc.code, exc.message), 0

        update = ChannelRefreshUpdate(
            channel_pk=channel.id,
            snapshot=snapshot,
            last_video_uploaded_at=latest.published_at,
        )
        return ItemOutcome.success(channel.channel_id, update), latest.units_used

    def _fetched_on(self, channel: ChannelRecord, today: date) -> bool:
        fetched_at = parse_timestamp(channel.fetched_at)
        if fetched_at is None:
            return False
        return fetched_at.astimezone(ZoneInfo(self._timezone)).date() == today
