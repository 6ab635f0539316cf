from __future__ import annotations

import re
from datetime import time
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".trendfeed"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "telemetry_enabled",
)
_DAILY_TIME_PATTERN = re.compile(r"^(?P<hour>\d{1,2}):(?P<minute>\d{2})$")


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{TRENDFEED_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


def parse_daily_time(raw_value: str) -> time:
    matched = _DAILY_TIME_PATTERN.match(raw_value.strip())
    if matched is None:
        raise ValueError(f"Expected HH:MM, got {raw_value!r}.")
    hour = int(matched.group("hour"))
    minute = int(matched.group("minute"))
    if hour > 23 or minute > 59:
        raise ValueError(f"Time out of range: {raw_value!r}.")
    return time(hour=hour, minute=minute)


def parse_server_api_keys(raw_value: str | None) -> dict[str, str]:
    """Parse `name=key,name2=key2` into an ordered name -> key mapping."""
    if raw_value is None:
        return {}
    keys: dict[str, str] = {}
    for raw_entry in raw_value.split(","):
        entry = raw_entry.strip()
        if not entry:
            continue
        name, separator, api_key = entry.partition("=")
        if not separator or not name.strip() or not api_key.strip():
            raise ValueError(
                "TRENDFEED_SERVER_API_KEYS entries must look like `name=key`."
            )
        keys[name.strip()] = api_key.strip()
    return keys


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from `TRENDFEED_*` environment variables (or `.env`).
    """

    model_config = SettingsConfigDict(
        env_prefix="TRENDFEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )
    default_timezone: str = Field(
        default="Asia/Seoul",
        description="Timezone for daily jobs and the calendar day used by per-user quota rows.",
    )

    # Scheduler.
    scheduler_enabled: bool = Field(
        default=True,
        validation_alias="TRENDFEED_ENABLE_SCHEDULER",
        description="Enable the background scheduler loop.",
    )
    scheduler_poll_interval_seconds: int = Field(
        default=30,
        description="How often the scheduler checks whether a daily job is due.",
    )
    quota_reset_time: str = Field(
        default="16:00",
        description="Local HH:MM at which every credential usage counter is zeroed.",
    )
    channel_refresh_time: str = Field(
        default="16:10",
        description="Local HH:MM at which tracked channels are re-synchronized.",
    )

    # Quota guardrails.
    quota_daily_limit: int = Field(
        default=10_000,
        ge=1,
        description="Daily quota cap per credential.",
    )
    quota_user_daily_limit: int = Field(
        default=1_000,
        ge=1,
        description="Daily cap per user on each server credential.",
    )
    credential_selection_attempts: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Server credential selections tried when a charge hits the credential cap.",
    )
    server_api_keys: str | None = Field(
        default=None,
        description="Optional `name=key,...` list of server credentials seeded at startup.",
    )
    admin_token: str | None = Field(
        default=None,
        description=(
            "Shared secret required in `X-Admin-Token` on `/admin` routes. "
            "Unset leaves them to the upstream gateway."
        ),
    )

    # Platform and discovery.
    youtube_http_timeout_seconds: float = Field(
        default=15.0,
        description="HTTP timeout for YouTube Data API calls.",
    )
    keyword_search_max_pages: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Hard cap on keyword search pages (100 quota units each) per request.",
    )
    discovery_timeout_seconds: float = Field(
        default=60.0,
        description="Deadline after which a discovery request stops issuing platform calls.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )
    log_max_bytes: int = Field(
        default=10_000_000,
        ge=1_024,
        description="Size at which each log file is rotated.",
    )
    log_backup_count: int = Field(
        default=5,
        ge=0,
        description="Rotated log files kept next to each active log file.",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @property
    def quota_reset_at(self) -> time:
        return parse_daily_time(self.quota_reset_time)

    @property
    def channel_refresh_at(self) -> time:
        return parse_daily_time(self.channel_refresh_time)

    @property
    def bootstrap_server_api_keys(self) -> dict[str, str]:
        return parse_server_api_keys(self.server_api_keys)

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("TRENDFEED_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("TRENDFEED_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("default_timezone", mode="before")
    @classmethod
    def _validate_timezone(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("TRENDFEED_DEFAULT_TIMEZONE must be a non-empty string.")
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown timezone: {normalized}") from exc
        return normalized

    @field_validator("quota_reset_time", "channel_refresh_time", mode="before")
    @classmethod
    def _validate_daily_time(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Daily job times must be HH:MM strings.")
        parsed = parse_daily_time(value)
        return parsed.strftime("%H:%M")

    @field_validator("admin_token", mode="before")
    @classmethod
    def _normalize_admin_token(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("server_api_keys", mode="before")
    @classmethod
    def _validate_server_api_keys(cls, value: Any) -> str | None:
        normalized = _normalize_optional_text(value)
        parse_server_api_keys(normalized)
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
