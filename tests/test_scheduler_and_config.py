from __future__ import annotations

import time
from datetime import UTC, datetime
from datetime import time as daily_time
from pathlib import Path

import pytest

from trendfeed.config import load_settings, parse_daily_time, parse_server_api_keys
from trendfeed.dependencies import build_container
from trendfeed.repositories.database import Database
from trendfeed.repositories.scheduler_state_repository import SchedulerStateRepository
from trendfeed.services.scheduler_service import (
    CHANNEL_REFRESH_JOB,
    QUOTA_RESET_JOB,
    DailyJob,
    SchedulerService,
)
from trendfeed.telemetry import TelemetryClient

# 07:30 UTC is 16:30 in Seoul.
AFTER_RESET = datetime(2026, 3, 10, 7, 30, tzinfo=UTC)
BEFORE_RESET = datetime(2026, 3, 10, 6, 30, tzinfo=UTC)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _scheduler(
    database: Database,
    jobs: list[DailyJob],
    clock: _Clock,
    *,
    lock_path: Path | None = None,
    poll_interval_seconds: int = 30,
) -> SchedulerService:
    return SchedulerService(
        jobs,
        SchedulerStateRepository(database),
        timezone="Asia/Seoul",
        poll_interval_seconds=poll_interval_seconds,
        lock_path=lock_path,
        clock=clock,
    )


def test_run_due_jobs_fires_each_job_once_per_local_day(database: Database) -> None:
    calls: list[str] = []
    clock = _Clock(BEFORE_RESET)
    scheduler = _scheduler(
        database,
        [
            DailyJob(QUOTA_RESET_JOB, daily_time(16, 0), lambda: calls.append("reset")),
            DailyJob(CHANNEL_REFRESH_JOB, daily_time(16, 10), lambda: calls.append("refresh")),
        ],
        clock,
    )

    assert scheduler.run_due_jobs() == []

    clock.now = datetime(2026, 3, 10, 7, 5, tzinfo=UTC)
    assert scheduler.run_due_jobs() == [QUOTA_RESET_JOB]

    clock.now = AFTER_RESET
    assert scheduler.run_due_jobs() == [CHANNEL_REFRESH_JOB]
    assert scheduler.run_due_jobs() == []

    clock.now = datetime(2026, 3, 11, 7, 30, tzinfo=UTC)
    assert scheduler.run_due_jobs() == [QUOTA_RESET_JOB, CHANNEL_REFRESH_JOB]
    assert calls == ["reset", "refresh", "reset", "refresh"]


def test_failed_job_is_not_retried_the_same_day(database: Database) -> None:
    attempts: list[int] = []

    def failing_job() -> None:
        attempts.append(1)
        raise RuntimeError("boom")

    clock = _Clock(AFTER_RESET)
    scheduler = _scheduler(database, [DailyJob(QUOTA_RESET_JOB, daily_time(16, 0), failing_job)], clock)

    assert scheduler.run_due_jobs() == [QUOTA_RESET_JOB]
    assert scheduler.run_due_jobs() == []
    assert attempts == [1]
    assert SchedulerStateRepository(database).get_last_run_date(QUOTA_RESET_JOB) == "2026-03-10"


def test_restarted_scheduler_remembers_todays_runs(database: Database) -> None:
    calls: list[str] = []
    job = DailyJob(QUOTA_RESET_JOB, daily_time(16, 0), lambda: calls.append("reset"))
    clock = _Clock(AFTER_RESET)

    _scheduler(database, [job], clock).run_due_jobs()
    _scheduler(database, [job], clock).run_due_jobs()

    assert calls == ["reset"]


def test_scheduler_thread_runs_due_jobs(database: Database, tmp_path: Path) -> None:
    calls: list[str] = []
    scheduler = _scheduler(
        database,
        [DailyJob(QUOTA_RESET_JOB, daily_time(0, 0), lambda: calls.append("reset"))],
        _Clock(AFTER_RESET),
        lock_path=tmp_path / "scheduler.lock",
        poll_interval_seconds=1,
    )

    scheduler.start()
    time.sleep(0.5)
    scheduler.stop()

    assert calls == ["reset"]


def test_scheduler_lock_allows_a_single_instance(database: Database, tmp_path: Path) -> None:
    calls: list[str] = []
    lock_path = tmp_path / "scheduler.lock"
    job = DailyJob(QUOTA_RESET_JOB, daily_time(0, 0), lambda: calls.append("reset"))
    first = _scheduler(database, [job], _Clock(AFTER_RESET), lock_path=lock_path)
    second = _scheduler(database, [job], _Clock(AFTER_RESET), lock_path=lock_path)

    first._try_acquire_process_lock()
    try:
        assert second._try_acquire_process_lock() is False
    finally:
        first._release_process_lock()
    assert second._try_acquire_process_lock() is True
    second._release_process_lock()


def test_load_settings_parses_env_and_paths(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    data_dir = tmp_path / "data"
    monkeypatch.setenv("TRENDFEED_DATA_DIR", str(data_dir))
    monkeypatch.setenv("TRENDFEED_ENABLE_SCHEDULER", "false")
    monkeypatch.setenv("TRENDFEED_DEFAULT_TIMEZONE", "UTC")
    monkeypatch.setenv("TRENDFEED_QUOTA_RESET_TIME", "7:05")
    monkeypatch.setenv("TRENDFEED_CHANNEL_REFRESH_TIME", "07:15")
    monkeypatch.setenv("TRENDFEED_QUOTA_DAILY_LIMIT", "12000")
    monkeypatch.setenv("TRENDFEED_QUOTA_USER_DAILY_LIMIT", "500")
    monkeypatch.setenv("TRENDFEED_SERVER_API_KEYS", " main=key-1, backup = key-2 ,")
    monkeypatch.setenv("TRENDFEED_KEYWORD_SEARCH_MAX_PAGES", "3")
    monkeypatch.setenv("TRENDFEED_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("TRENDFEED_TELEMETRY_SINK", " LOG ")
    monkeypatch.setenv("TRENDFEED_ADMIN_TOKEN", "  s3cret ")
    monkeypatch.setenv("TRENDFEED_LOG_MAX_BYTES", "2048")
    monkeypatch.setenv("TRENDFEED_LOG_BACKUP_COUNT", "0")

    settings = load_settings()

    assert settings.data_dir == data_dir.resolve()
    assert settings.db_path == (data_dir / "state.db").resolve()
    assert settings.log_dir == (data_dir / "logs").resolve()
    assert settings.scheduler_enabled is False
    assert settings.default_timezone == "UTC"
    assert settings.quota_reset_at == daily_time(7, 5)
    assert settings.channel_refresh_at == daily_time(7, 15)
    assert settings.quota_daily_limit == 12_000
    assert settings.quota_user_daily_limit == 500
    assert settings.bootstrap_server_api_keys == {"main": "key-1", "backup": "key-2"}
    assert settings.keyword_search_max_pages == 3
    assert settings.log_level == "DEBUG"
    assert settings.telemetry_sink == "log"
    assert settings.admin_token == "s3cret"
    assert settings.log_max_bytes == 2_048
    assert settings.log_backup_count == 0


def test_load_settings_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    for name in (
        "TRENDFEED_DATA_DIR",
        "TRENDFEED_ENABLE_SCHEDULER",
        "TRENDFEED_SERVER_API_KEYS",
        "TRENDFEED_ADMIN_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.data_dir == (tmp_path / ".trendfeed").resolve()
    assert settings.default_timezone == "Asia/Seoul"
    assert settings.quota_reset_at == daily_time(16, 0)
    assert settings.channel_refresh_at == daily_time(16, 10)
    assert settings.quota_daily_limit == 10_000
    assert settings.quota_user_daily_limit == 1_000
    assert settings.scheduler_enabled is True
    assert settings.bootstrap_server_api_keys == {}
    assert settings.admin_token is None
    assert settings.log_max_bytes == 10_000_000
    assert settings.log_backup_count == 5


def test_load_settings_reads_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("TRENDFEED_QUOTA_DAILY_LIMIT", raising=False)
    (tmp_path / ".env").write_text("TRENDFEED_QUOTA_DAILY_LIMIT=4321\n", encoding="utf-8")

    assert load_settings().quota_daily_limit == 4_321


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("TRENDFEED_DEFAULT_TIMEZONE", "Mars/Olympus"),
        ("TRENDFEED_QUOTA_RESET_TIME", "25:00"),
        ("TRENDFEED_CHANNEL_REFRESH_TIME", "noon"),
        ("TRENDFEED_SERVER_API_KEYS", "missing-separator"),
        ("TRENDFEED_TELEMETRY_SINK", "otlp"),
        ("TRENDFEED_QUOTA_DAILY_LIMIT", "0"),
        ("TRENDFEED_LOG_MAX_BYTES", "100"),
    ],
)
def test_load_settings_rejects_invalid_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError):
        load_settings()


def test_parse_helpers() -> None:
    assert parse_daily_time(" 09:30 ") == daily_time(9, 30)
    assert parse_server_api_keys(None) == {}
    assert parse_server_api_keys("a=1,b=2") == {"a": "1", "b": "2"}
    with pytest.raises(ValueError):
        parse_daily_time("9:3")
    with pytest.raises(ValueError):
        parse_server_api_keys("a=")


def test_build_container_seeds_configured_server_keys(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TRENDFEED_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("TRENDFEED_SERVER_API_KEYS", "main=key-1,backup=key-2")

    settings = load_settings()
    container = build_container(settings, telemetry=TelemetryClient.disabled())
    again = build_container(settings, telemetry=TelemetryClient.disabled())

    names = [record.name for record in again.credential_service.server_usage()]
    assert names == ["backup", "main"]
    assert container.database.path == settings.db_path
    scheduler = container.build_scheduler()
    assert isinstance(scheduler, SchedulerService)


def test_blank_admin_token_leaves_admin_routes_open(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRENDFEED_ADMIN_TOKEN", "   ")

    assert load_settings().admin_token is None
