from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

DurationBucket = Literal["short", "medium", "long", "all"]

SHORT_MAX_SECONDS = 240
LONG_MIN_SECONDS = 1_200

ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)


@dataclass(frozen=True)
class VideoCriteria:
    min_views: int = 0
    min_views_per_hour: float = 0.0
    video_duration: DurationBucket = "all"


def parse_iso8601_duration_seconds(raw_value: object) -> int | None:
    if not isinstance(raw_value, str):
        return None
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None:
        return None

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def duration_bucket(duration_seconds: int) -> DurationBucket:
    if duration_seconds >= LONG_MIN_SECONDS:
        return "long"
    if duration_seconds >= SHORT_MAX_SECONDS:
        return "medium"
    return "short"


def matches_duration(duration_seconds: int, wanted: DurationBucket) -> bool:
    if wanted == "all":
        return True
    return duration_bucket(duration_seconds) == wanted


def whole_hours_since(published_at: datetime, now: datetime) -> int:
    elapsed_seconds = (now - published_at).total_seconds()
    return max(int(elapsed_seconds // 3_600), 1)


def views_per_hour(view_count: int, published_at: datetime, now: datetime) -> float:
    # Videos younger than an hour count as one hour old.
    return view_count / whole_hours_since(published_at, now)


def passes(
    *,
    view_count: int,
    vph: float,
    duration_seconds: int,
    criteria: VideoCriteria,
) -> bool:
    if view_count < criteria.min_views:
        return False
    if criteria.min_views_per_hour > 0 and vph < criteria.min_views_per_hour:
        return False
    return matches_duration(duration_seconds, criteria.video_duration)


def format_duration(duration_seconds: int) -> str:
    hours, remainder = divmod(duration_seconds, 3_600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"
