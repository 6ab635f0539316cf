from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from trendfeed.services.video_filters import (
    VideoCriteria,
    duration_bucket,
    format_duration,
    matches_duration,
    parse_iso8601_duration_seconds,
    passes,
    views_per_hour,
    whole_hours_since,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    ("raw_value", "expected"),
    [
        ("PT4M13S", 253),
        ("PT1H", 3_600),
        ("PT45S", 45),
        ("P1DT2H", 93_600),
        ("PT0S", 0),
        ("P0D", 0),
        ("not-a-duration", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_iso8601_duration_seconds(raw_value: object, expected: int | None) -> None:
    assert parse_iso8601_duration_seconds(raw_value) == expected


@pytest.mark.parametrize(
    ("seconds", "bucket"),
    [
        (0, "short"),
        (239, "short"),
        (240, "medium"),
        (1_199, "medium"),
        (1_200, "long"),
        (7_200, "long"),
    ],
)
def test_duration_bucket_boundaries(seconds: int, bucket: str) -> None:
    assert duration_bucket(seconds) == bucket
    assert matches_duration(seconds, "all") is True
    assert matches_duration(seconds, bucket) is True  # type: ignore[arg-type]


def test_views_per_hour_uses_whole_hours_with_a_one_hour_floor() -> None:
    assert whole_hours_since(NOW - timedelta(minutes=10), NOW) == 1
    assert whole_hours_since(NOW - timedelta(hours=2, minutes=59), NOW) == 2
    assert views_per_hour(1_000, NOW - timedelta(minutes=10), NOW) == 1_000
    assert views_per_hour(1_000, NOW - timedelta(hours=4, minutes=30), NOW) == 250


def test_views_per_hour_for_future_timestamps_uses_one_hour() -> None:
    assert views_per_hour(500, NOW + timedelta(hours=3), NOW) == 500


def test_passes_applies_every_threshold() -> None:
    criteria = VideoCriteria(min_views=100, min_views_per_hour=10.0, video_duration="medium")

    assert passes(view_count=500, vph=50.0, duration_seconds=600, criteria=criteria) is True
    assert passes(view_count=99, vph=50.0, duration_seconds=600, criteria=criteria) is False
    assert passes(view_count=500, vph=9.9, duration_seconds=600, criteria=criteria) is False
    assert passes(view_count=500, vph=50.0, duration_seconds=60, criteria=criteria) is False


def test_zero_vph_threshold_is_disabled() -> None:
    criteria = VideoCriteria(min_views=0, min_views_per_hour=0.0)

    assert passes(view_count=0, vph=0.0, duration_seconds=0, criteria=criteria) is True


@pytest.mark.parametrize(
    ("seconds", "formatted"),
    [
        (0, "0:00"),
        (59, "0:59"),
        (253, "4:13"),
        (3_600, "1:00:00"),
        (3_723, "1:02:03"),
    ],
)
def test_format_duration(seconds: int, formatted: str) -> None:
    assert format_duration(seconds) == formatted
