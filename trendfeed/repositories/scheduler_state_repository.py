from __future__ import annotations

from trendfeed.repositories.common import utc_now_iso
from trendfeed.repositories.database import Database


class SchedulerStateRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get_last_run_date(self, job_name: str) -> str | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT last_run_date FROM scheduler_state WHERE job_name = ?",
                (job_name,),
            ).fetchone()
        return str(row["last_run_date"]) if row is not None else None

    def mark_run(self, job_name: str, run_date: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO scheduler_state (job_name, last_run_date, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(job_name) DO UPDATE SET
                    last_run_date = excluded.last_run_date,
                    updated_at = excluded.updated_at
                """,
                (job_name, run_date, utc_now_iso()),
            )
