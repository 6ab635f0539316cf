from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import pytest
from youtube_fakes import (
    FakeYouTube,
    channel_item,
    make_http_error,
    snapshot_from_item,
    video_item,
)

from trendfeed.errors import CredentialNotFoundError, NoCredentialAvailableError
from trendfeed.repositories.channel_repository import ChannelRepository
from trendfeed.repositories.credential_repository import CredentialRepository
from trendfeed.repositories.database import Database
from trendfeed.repositories.quota_ledger_repository import QuotaLedgerRepository
from trendfeed.services.credential_selector import CredentialSelector
from trendfeed.services.discovery_service import (
    ChannelDiscoveryRequest,
    DiscoveryService,
    KeywordDiscoveryRequest,
    deadline_after,
)
from trendfeed.services.playlist_sync import IncrementalPlaylistSync
from trendfeed.services.video_filters import VideoCriteria
from trendfeed.services.youtube_client import YouTubeClient
from trendfeed.services.youtube_fetch_service import YouTubeFetchService

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class _BrokenPlaylistYouTube(FakeYouTube):
    def __init__(self, broken_playlist_id: str) -> None:
        super().__init__()
        self._broken_playlist_id = broken_playlist_id

    def handle(self, endpoint: str, kwargs: dict[str, Any]) -> dict[str, Any]:
        if endpoint == "playlistItems.list" and kwargs.get("playlistId") == self._broken_playlist_id:
            self.calls.append((endpoint, dict(kwargs)))
            raise make_http_error(500)
        return super().handle(endpoint, kwargs)


@dataclass
class _Harness:
    fake: FakeYouTube
    channels: ChannelRepository
    credentials: CredentialRepository
    ledger: QuotaLedgerRepository
    service: DiscoveryService

    def track(self, channel_id: str, **overrides: Any) -> None:
        """Add a channel to the fake platform and to the local store."""
        item = channel_item(channel_id, **overrides)
        self.fake.add_channel(item)
        self.channels.register(snapshot_from_item(item))

    def upload(self, channel_id: str, video_id: str, *, views: int, hours_ago: float, **extra: Any) -> None:
        """Add a video to the channel's uploads playlist, keeping it newest first."""
        item = video_item(
            video_id,
            channel_id=channel_id,
            views=views,
            hours_ago=hours_ago,
            now=NOW,
            **extra,
        )
        self.fake.add_video(item)
        playlist = self.fake.playlists.setdefault(f"UU{channel_id}", [])
        playlist.append((video_id, item["snippet"]["publishedAt"]))
        playlist.sort(key=lambda entry: entry[1], reverse=True)


def _harness(database: Database, fake: FakeYouTube | None = None, *, max_pages: int = 5) -> _Harness:
    fake = fake or FakeYouTube()
    ledger = QuotaLedgerRepository(database, daily_limit=10_000, user_daily_limit=1_000, clock=lambda: NOW)
    credentials = CredentialRepository(database)
    channels = ChannelRepository(database)
    fetch_service = YouTubeFetchService(YouTubeClient(client_factory=fake.factory), ledger)
    service = DiscoveryService(
        fetch_service=fetch_service,
        selector=CredentialSelector(credentials, daily_limit=10_000),
        playlist_sync=IncrementalPlaylistSync(fetch_service),
        channel_repository=channels,
        keyword_search_max_pages=max_pages,
        clock=lambda: NOW,
    )
    return _Harness(
        fake=fake,
        channels=channels,
        credentials=credentials,
        ledger=ledger,
        service=service,
    )


def _seed_search(harness: _Harness, keyword: str, views: list[int], *, channel_id: str = "UC1") -> list[str]:
    ids = [f"s{index:03d}" for index in range(len(views))]
    for video_id, view_count in zip(ids, views, strict=True):
        harness.fake.add_video(
            video_item(video_id, channel_id=channel_id, views=view_count, hours_ago=10, now=NOW)
        )
    harness.fake.search_results[keyword] = ids
    return ids


def test_keyword_search_stops_at_first_video_under_min_views(database: Database) -> None:
    harness = _harness(database)
    user = harness.credentials.upsert_user_credential("user-1", "user-key")
    harness.fake.add_channel(channel_item("UC1", subscriber_count=1_000))
    _seed_search(harness, "cats", [100_000 - index * 1_000 for index in range(150)])

    result = harness.service.discover_by_keyword(
        "user-1",
        KeywordDiscoveryRequest(
            keyword="cats",
            days=7,
            max_results=50,
            criteria=VideoCriteria(min_views=71_500),
        ),
    )

    assert len(harness.fake.calls_to("search.list")) == 1
    assert len(result.videos) == 29
    assert result.stop_reason == "min_views"
    assert result.pages_fetched == 1
    # search + one videos.list batch + one channels.list batch
    assert result.units_used == 102
    record = harness.credentials.get(user.id)
    assert record is not None and record.usage == 102
    assert set(harness.fake.api_keys) == {"user-key"}


def test_keyword_results_are_ranked_by_views_per_hour(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_user_credential("user-1", "user-key")
    harness.fake.add_channel(channel_item("UC1", subscriber_count=500))
    for video_id, views, hours_ago in (("old", 9_000, 90), ("fresh", 5_000, 2), ("mid", 6_000, 12)):
        harness.fake.add_video(video_item(video_id, views=views, hours_ago=hours_ago, now=NOW))
    harness.fake.search_results["cats"] = ["old", "mid", "fresh"]

    result = harness.service.discover_by_keyword(
        "user-1",
        KeywordDiscoveryRequest(keyword="cats", days=7, max_results=10),
    )

    assert [video.video_id for video in result.videos] == ["fresh", "mid", "old"]
    assert [video.rank for video in result.videos] == [1, 2, 3]
    assert result.videos[0].views_per_hour == 2_500
    assert result.videos[0].views_per_subscriber == 10
    assert result.videos[0].duration == "10:00"
    assert result.videos[0].link == "https://www.youtube.com/watch?v=fresh"
    assert result.videos[0].channel is not None
    assert result.videos[0].channel.link == "https://www.youtube.com/channel/UC1"
    assert result.stop_reason == "exhausted"


def _seed_old_then_fresh_pages(harness: _Harness, keyword: str) -> None:
    """Page 1: 50 old videos at 20k views (VPH 100). Page 2: 50 fresh ones at 15k (VPH 7,500)."""
    ids: list[str] = []
    for index in range(50):
        harness.fake.add_video(video_item(f"old{index}", views=20_000, hours_ago=200, now=NOW))
        ids.append(f"old{index}")
    for index in range(50):
        harness.fake.add_video(video_item(f"fresh{index}", views=15_000, hours_ago=2, now=NOW))
        ids.append(f"fresh{index}")
    harness.fake.search_results[keyword] = ids


def test_keyword_search_without_vph_threshold_reads_past_first_page(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_user_credential("user-1", "user-key")
    harness.fake.add_channel(channel_item("UC1"))
    _seed_old_then_fresh_pages(harness, "cats")

    result = harness.service.discover_by_keyword(
        "user-1",
        KeywordDiscoveryRequest(
            keyword="cats",
            days=30,
            max_results=10,
            criteria=VideoCriteria(min_views=1_000),
        ),
    )

    assert len(harness.fake.calls_to("search.list")) == 2
    assert result.stop_reason == "exhausted"
    assert len(result.videos) == 10
    assert all(video.video_id.startswith("fresh") for video in result.videos)
    assert result.videos[0].views_per_hour == 7_500


def test_keyword_search_with_vph_threshold_returns_once_enough_qualify(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_user_credential("user-1", "user-key")
    harness.fake.add_channel(channel_item("UC1"))
    _seed_search(harness, "cats", [10_000] * 150)

    result = harness.service.discover_by_keyword(
        "user-1",
        KeywordDiscoveryRequest(
            keyword="cats",
            days=7,
            max_results=10,
            criteria=VideoCriteria(min_views_per_hour=500),
        ),
    )

    assert len(result.videos) == 10
    assert result.stop_reason == "max_results"
    assert len(harness.fake.calls_to("search.list")) == 1


def test_keyword_search_honors_page_cap(database: Database) -> None:
    harness = _harness(database, max_pages=2)
    harness.credentials.upsert_user_credential("user-1", "user-key")
    harness.fake.add_channel(channel_item("UC1"))
    _seed_search(harness, "cats", [10_000] * 200)

    result = harness.service.discover_by_keyword(
        "user-1",
        KeywordDiscoveryRequest(
            keyword="cats",
            days=7,
            max_results=50,
            criteria=VideoCriteria(min_views_per_hour=1_000_000),
        ),
    )

    assert result.videos == []
    assert result.stop_reason == "page_limit"
    assert result.pages_fetched == 2
    assert len(harness.fake.calls_to("search.list")) == 2
    assert result.units_used == 202


def test_keyword_search_uses_tracked_channel_metadata_without_a_lookup(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_user_credential("user-1", "user-key")
    harness.track("UC1", subscriber_count=2_000)
    _seed_search(harness, "cats", [1_000])

    result = harness.service.discover_by_keyword(
        "user-1",
        KeywordDiscoveryRequest(keyword="cats", days=7, max_results=5),
    )

    assert harness.fake.calls_to("channels.list") == []
    assert result.videos[0].channel is not None
    assert result.videos[0].channel.subscriber_count == 2_000
    assert result.units_used == 101


def test_keyword_search_requires_personal_key(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_server_credential("primary", "server-key")

    with pytest.raises(CredentialNotFoundError):
        harness.service.discover_by_keyword(
            "user-1",
            KeywordDiscoveryRequest(keyword="cats", days=7, max_results=5),
        )
    assert harness.fake.calls == []


def test_keyword_search_checks_cancellation_before_searching(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_user_credential("user-1", "user-key")
    _seed_search(harness, "cats", [1_000])

    result = harness.service.discover_by_keyword(
        "user-1",
        KeywordDiscoveryRequest(keyword="cats", days=7, max_results=5),
        is_cancelled=lambda: True,
    )

    assert result.cancelled is True
    assert result.stop_reason == "cancelled"
    assert harness.fake.calls == []


def _seed_channel_uploads(harness: _Harness) -> None:
    harness.track("UC1", subscriber_count=100)
    # Newest first in the playlist; VPH grows with age here so newest is not best.
    for index, views in enumerate([100, 200, 300, 4_000, 6_000, 9_000]):
        harness.upload("UC1", f"c1-{index}", views=views, hours_ago=index + 1)


def test_channel_discovery_normal_mode_returns_first_passing_uploads(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_server_credential("primary", "server-key")
    _seed_channel_uploads(harness)

    result = harness.service.discover_by_channels(
        "user-1",
        ChannelDiscoveryRequest(channel_ids=("UC1",), days=7, max_results=3),
    )

    assert sorted(video.video_id for video in result.videos) == ["c1-0", "c1-1", "c1-2"]
    assert result.stop_reason == "completed"
    assert result.failures == []


def test_channel_discovery_popular_mode_reads_whole_window(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_server_credential("primary", "server-key")
    _seed_channel_uploads(harness)

    result = harness.service.discover_by_channels(
        "user-1",
        ChannelDiscoveryRequest(channel_ids=("UC1",), days=7, max_results=3, popular_only=True),
    )

    assert [video.video_id for video in result.videos] == ["c1-5", "c1-4", "c1-3"]
    assert [video.rank for video in result.videos] == [1, 2, 3]
    assert result.videos[0].views_per_hour == 1_500


def test_channel_discovery_merges_channels_without_global_truncation(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_server_credential("primary", "server-key")
    harness.track("UC1")
    harness.track("UC2")
    for index in range(3):
        harness.upload("UC1", f"a{index}", views=1_000 * (index + 1), hours_ago=5)
        harness.upload("UC2", f"b{index}", views=1_600 * (index + 1), hours_ago=5)

    result = harness.service.discover_by_channels(
        "user-1",
        ChannelDiscoveryRequest(channel_ids=("UC1", "UC2"), days=7, max_results=2, popular_only=True),
    )

    assert [video.video_id for video in result.videos] == ["b2", "b1", "a2", "a1"]
    assert [video.rank for video in result.videos] == [1, 2, 3, 4]


def test_channel_discovery_charges_server_pool_on_behalf_of_user(database: Database) -> None:
    harness = _harness(database)
    server = harness.credentials.upsert_server_credential("primary", "server-key")
    _seed_channel_uploads(harness)

    result = harness.service.discover_by_channels(
        "user-1",
        ChannelDiscoveryRequest(channel_ids=("UC1",), days=7, max_results=10),
    )

    # one playlist page + one videos.list batch
    assert result.units_used == 2
    usage = harness.ledger.user_usage_today("user-1")
    assert [(row.credential_id, row.usage) for row in usage] == [(server.id, 2)]
    assert set(harness.fake.api_keys) == {"server-key"}


def test_channel_discovery_skips_uploads_outside_the_window(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_server_credential("primary", "server-key")
    harness.track("UC1")
    harness.upload("UC1", "recent", views=100, hours_ago=5)
    harness.upload("UC1", "ancient", views=1_000_000, hours_ago=24 * 30)

    result = harness.service.discover_by_channels(
        "user-1",
        ChannelDiscoveryRequest(channel_ids=("UC1",), days=7, max_results=10, popular_only=True),
    )

    assert [video.video_id for video in result.videos] == ["recent"]


def test_channel_discovery_registers_unknown_channels_and_reports_missing(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_server_credential("primary", "server-key")
    harness.fake.add_channel(channel_item("UCnew"))
    harness.upload("UCnew", "n1", views=100, hours_ago=3)

    result = harness.service.discover_by_channels(
        "user-1",
        ChannelDiscoveryRequest(channel_ids=("UCnew", "UCghost"), days=7, max_results=10),
    )

    assert [video.video_id for video in result.videos] == ["n1"]
    registered = harness.channels.get_by_channel_id("UCnew")
    assert registered is not None
    assert registered.last_video_uploaded_at == "2026-03-10T09:00:00+00:00"
    assert harness.channels.get_by_channel_id("UCghost") is None
    assert [(failure.item_id, failure.code) for failure in result.failures] == [
        ("UCghost", "CHANNEL_NOT_FOUND")
    ]
    assert len(harness.fake.calls_to("channels.list")) == 1
    # lookup, latest-upload read, playlist page, videos batch
    assert [call["maxResults"] for call in harness.fake.calls_to("playlistItems.list")] == [1, 50]
    assert result.units_used == 4


def test_channel_discovery_reports_failing_channel_and_keeps_others(database: Database) -> None:
    harness = _harness(database, _BrokenPlaylistYouTube("UUUC2"))
    harness.credentials.upsert_server_credential("primary", "server-key")
    harness.track("UC1")
    harness.track("UC2")
    harness.upload("UC1", "ok-1", views=100, hours_ago=3)

    result = harness.service.discover_by_channels(
        "user-1",
        ChannelDiscoveryRequest(channel_ids=("UC1", "UC2"), days=7, max_results=10),
    )

    assert [video.video_id for video in result.videos] == ["ok-1"]
    assert [(failure.item_id, failure.code) for failure in result.failures] == [
        ("UC2", "PLATFORM_API_ERROR")
    ]


def test_channel_discovery_without_server_credentials_fails(database: Database) -> None:
    harness = _harness(database)
    harness.track("UC1")

    with pytest.raises(NoCredentialAvailableError):
        harness.service.discover_by_channels(
            "user-1",
            ChannelDiscoveryRequest(channel_ids=("UC1",), days=7, max_results=10),
        )


def test_channel_discovery_cancellation_returns_partial_result(database: Database) -> None:
    harness = _harness(database)
    harness.credentials.upsert_server_credential("primary", "server-key")
    _seed_channel_uploads(harness)

    result = harness.service.discover_by_channels(
        "user-1",
        ChannelDiscoveryRequest(channel_ids=("UC1",), days=7, max_results=10),
        is_cancelled=deadline_after(0),
    )

    assert result.cancelled is True
    assert result.stop_reason == "cancelled"
    assert result.videos == []
    assert harness.fake.calls == []


def test_deadline_after_expires() -> None:
    assert deadline_after(60)() is False
    assert deadline_after(0)() is True
    assert deadline_after(-5)() is True
