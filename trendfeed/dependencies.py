from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

from trendfeed.config import AppSettings, load_settings
from trendfeed.repositories.channel_repository import ChannelRepository
from trendfeed.repositories.common import utc_now
from trendfeed.repositories.credential_repository import CredentialRepository
from trendfeed.repositories.database import Database
from trendfeed.repositories.quota_ledger_repository import QuotaLedgerRepository
from trendfeed.repositories.scheduler_state_repository import SchedulerStateRepository
from trendfeed.services.channel_refresh_service import ChannelRefreshService
from trendfeed.services.channel_service import ChannelService
from trendfeed.services.credential_selector import CredentialSelector
from trendfeed.services.credential_service import CredentialService
from trendfeed.services.discovery_service import DiscoveryService
from trendfeed.services.playlist_sync import IncrementalPlaylistSync
from trendfeed.services.scheduler_service import (
    CHANNEL_REFRESH_JOB,
    QUOTA_RESET_JOB,
    DailyJob,
    SchedulerService,
)
from trendfeed.services.youtube_client import ClientFactory, YouTubeClient
from trendfeed.services.youtube_fetch_service import YouTubeFetchService
from trendfeed.telemetry import TelemetryClient, build_telemetry_client


@dataclass(frozen=True)
class ServiceContainer:
    settings: AppSettings
    database: Database
    telemetry: TelemetryClient
    ledger: QuotaLedgerRepository
    credential_repository: CredentialRepository
    channel_repository: ChannelRepository
    scheduler_state_repository: SchedulerStateRepository
    selector: CredentialSelector
    fetch_service: YouTubeFetchService
    discovery_service: DiscoveryService
    channel_service: ChannelService
    channel_refresh_service: ChannelRefreshService
    credential_service: CredentialService

    def build_scheduler(self) -> SchedulerService:
        settings = self.settings
        return SchedulerService(
            [
                DailyJob(
                    name=QUOTA_RESET_JOB,
                    run_at=settings.quota_reset_at,
                    run=self.credential_service.reset_quota,
                ),
                DailyJob(
                    name=CHANNEL_REFRESH_JOB,
                    run_at=settings.channel_refresh_at,
                    run=self.channel_refresh_service.refresh_all_channels,
                ),
            ],
            self.scheduler_state_repository,
            timezone=settings.default_timezone,
            poll_interval_seconds=settings.scheduler_poll_interval_seconds,
            telemetry=self.telemetry,
            lock_path=settings.data_dir / "scheduler.lock",
        )


def build_container(
    settings: AppSettings,
    *,
    telemetry: TelemetryClient | None = None,
    client_factory: ClientFactory | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> ServiceContainer:
    """Wire every repository and service around one process-wide `Database`."""
    resolved_telemetry = (
        telemetry
        if telemetry is not None
        else build_telemetry_client(
            enabled=settings.telemetry_enabled,
            sink=settings.telemetry_sink,
        )
    )
    database = Database(settings.db_path)
    database.initialize()

    ledger = QuotaLedgerRepository(
        database,
        daily_limit=settings.quota_daily_limit,
        user_daily_limit=settings.quota_user_daily_limit,
        timezone=settings.default_timezone,
        clock=clock,
    )
    credential_repository = CredentialRepository(database)
    channel_repository = ChannelRepository(database)
    selector = CredentialSelector(
        credential_repository,
        daily_limit=settings.quota_daily_limit,
        max_attempts=settings.credential_selection_attempts,
        telemetry=resolved_telemetry,
    )
    fetch_service = YouTubeFetchService(
        YouTubeClient(
            http_timeout_seconds=settings.youtube_http_timeout_seconds,
            client_factory=client_factory,
        ),
        ledger,
        telemetry=resolved_telemetry,
    )
    credential_service = CredentialService(
        credential_repository=credential_repository,
        ledger=ledger,
        telemetry=resolved_telemetry,
    )
    credential_service.seed_server_keys(settings.bootstrap_server_api_keys)

    return ServiceContainer(
        settings=settings,
        database=database,
        telemetry=resolved_telemetry,
        ledger=ledger,
        credential_repository=credential_repository,
        channel_repository=channel_repository,
        scheduler_state_repository=SchedulerStateRepository(database),
        selector=selector,
        fetch_service=fetch_service,
        discovery_service=DiscoveryService(
            fetch_service=fetch_service,
            selector=selector,
            playlist_sync=IncrementalPlaylistSync(fetch_service),
            channel_repository=channel_repository,
            keyword_search_max_pages=settings.keyword_search_max_pages,
            telemetry=resolved_telemetry,
            clock=clock,
        ),
        channel_service=ChannelService(
            channel_repository=channel_repository,
            fetch_service=fetch_service,
            selector=selector,
            telemetry=resolved_telemetry,
        ),
        channel_refresh_service=ChannelRefreshService(
            channel_repository=channel_repository,
            fetch_service=fetch_service,
            selector=selector,
            timezone=settings.default_timezone,
            telemetry=resolved_telemetry,
            clock=clock,
        ),
        credential_service=credential_service,
    )


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_container() -> ServiceContainer:
    return build_container(get_settings(), telemetry=get_telemetry())


def reset_cached_dependencies() -> None:
    get_container.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
