from __future__ import annotations

import errno
import logging
import os
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from datetime import time as daily_time
from pathlib import Path
from typing import Any
from uuid import uuid4
from zoneinfo import ZoneInfo

from structlog.contextvars import bind_contextvars, reset_contextvars

from trendfeed.repositories.common import utc_now
from trendfeed.repositories.scheduler_state_repository import SchedulerStateRepository
from trendfeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("trendfeed.scheduler")

QUOTA_RESET_JOB = "quota_reset"
CHANNEL_REFRESH_JOB = "channel_refresh"

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms
    fcntl = None


@dataclass(frozen=True)
class DailyJob:
    name: str
    run_at: daily_time
    run: Callable[[], object]


class SchedulerService:
    """Background thread firing each daily job once per local calendar day.

    The day a job last fired is persisted before it runs, so a crash or a
    restart never fires the same job twice on one day.
    """

    def __init__(
        self,
        jobs: Sequence[DailyJob],
        state_repository: SchedulerStateRepository,
        *,
        timezone: str,
        poll_interval_seconds: int,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._jobs = list(jobs)
        self._state = state_repository
        self._zone = ZoneInfo(timezone)
        self._poll_interval_seconds = max(1, poll_interval_seconds)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock_path = lock_path
        self._lock_file: Any | None = None
        self._lock_acquired = False

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        if not self._try_acquire_process_lock():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="trendfeed-scheduler")
        self._thread.daemon = True
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
        self._release_process_lock()

    def run_due_jobs(self) -> list[str]:
        """Fire every job whose local time has passed and that has not fired today."""
        local_now = self._clock().astimezone(self._zone)
        today = local_now.date().isoformat()
        fired: list[str] = []
        for job in self._jobs:
            if local_now.time() < job.run_at:
                continue
            if self._state.get_last_run_date(job.name) == today:
                continue
            self._state.mark_run(job.name, today)
            self._run_job(job)
            fired.append(job.name)
        return fired

    def _run_job(self, job: DailyJob) -> None:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(scheduler_tick_id=tick_id, scheduler_job=job.name)
        started_at = time.perf_counter()
        self._telemetry.emit("scheduler.tick.start", tick_id=tick_id, job=job.name)
        try:
            job.run()
        except Exception as exc:
            self._telemetry.emit(
                "scheduler.tick.error",
                tick_id=tick_id,
                job=job.name,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            LOGGER.warning("scheduled job failed job=%s", job.name, exc_info=True)
        else:
            self._telemetry.emit(
                "scheduler.tick.finish",
                tick_id=tick_id,
                job=job.name,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                outcome="ok",
            )
        finally:
            reset_contextvars(**tick_tokens)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_due_jobs()
            except Exception:
                LOGGER.warning("scheduler tick failed", exc_info=True)
            self._stop_event.wait(self._poll_interval_seconds)

    def _try_acquire_process_lock(self) -> bool:
        if self._lock_path is None:
            return True

        if fcntl is None:
            LOGGER.warning(
                "scheduler single-instance lock unavailable on this platform; starting scheduler"
            )
            return True

        lock_path = self._lock_path
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = lock_path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            lock_file.close()
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                LOGGER.info(
                    "scheduler start skipped; lock held by another process path=%s",
                    lock_path,
                )
                return False
            LOGGER.warning(
                "scheduler lock acquisition failed path=%s; starting scheduler anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            lock_file.seek(0)
            lock_file.truncate()
            lock_file.write(f"{os.getpid()}\n")
            lock_file.flush()
        except OSError:
            LOGGER.debug("scheduler lock file metadata write failed path=%s", lock_path, exc_info=True)

        self._lock_file = lock_file
        self._lock_acquired = True
        return True

    def _release_process_lock(self) -> None:
        lock_file = self._lock_file
        if lock_file is None:
            self._lock_acquired = False
            return

        try:
            if self._lock_acquired and fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError:
            LOGGER.debug("scheduler lock release failed path=%s", self._lock_path, exc_info=True)
        finally:
            lock_file.close()
            self._lock_file = None
            self._lock_acquired = False
