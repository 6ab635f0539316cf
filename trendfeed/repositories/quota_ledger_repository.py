from __future__ import annotations

import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from trendfeed.repositories.common import local_today, utc_now, utc_now_iso
from trendfeed.repositories.database import Database

QuotaChargeReason = Literal["ok", "credential_limit", "user_limit", "credential_missing"]


@dataclass(frozen=True)
class QuotaCharge:
    committed: bool
    reason: QuotaChargeReason
    credential_id: int
    amount: int
    credential_usage: int
    daily_limit: int
    user_id: str | None
    user_usage: int | None
    user_daily_limit: int | None
    usage_date: str


@dataclass(frozen=True)
class QuotaResetResult:
    server_count: int
    user_count: int


@dataclass(frozen=True)
class UserServerUsage:
    credential_id: int
    credential_name: str | None
    usage_date: str
    usage: int
    user_daily_limit: int


class QuotaLedgerRepository:
    """Daily quota counters per credential, plus per-user counters on server credentials.

    Every charge runs inside one `BEGIN IMMEDIATE` transaction, so the
    read-check-increment sequence is atomic across threads and processes
    sharing the SQLite file.
    """

    def __init__(
        self,
        db: Database,
        *,
        daily_limit: int = 10_000,
        user_daily_limit: int = 1_000,
        timezone: str = "Asia/Seoul",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._daily_limit = daily_limit
        self._user_daily_limit = user_daily_limit
        self._timezone = timezone
        self._clock = clock

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    @property
    def user_daily_limit(self) -> int:
        return self._user_daily_limit

    def usage_date(self) -> str:
        return local_today(self._timezone, now=self._clock()).isoformat()

    def charge(
        self,
        credential_id: int,
        amount: int,
        on_behalf_of_user: str | None = None,
    ) -> QuotaCharge:
        if amount <= 0:
            raise ValueError(f"quota charge amount must be positive, got {amount}")

        usage_date = self.usage_date()
        with self._db.transaction() as conn:
            decision = self._evaluate(
                conn,
                credential_id=credential_id,
                amount=amount,
                on_behalf_of_user=on_behalf_of_user,
                usage_date=usage_date,
            )
            if not decision.committed:
                return decision

            now_iso = utc_now_iso()
            conn.execute(
                """
                UPDATE api_credentials
                SET usage = usage + ?, updated_at = ?
                WHERE id = ?
                """,
                (amount, now_iso, credential_id),
            )
            if on_behalf_of_user is not None:
                conn.execute(
                    """
                    INSERT INTO server_credential_usage_daily
                    (user_id, credential_id, usage_date, usage, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, credential_id, usage_date) DO UPDATE SET
                        usage = server_credential_usage_daily.usage + excluded.usage,
                        updated_at = excluded.updated_at
                    """,
                    (on_behalf_of_user, credential_id, usage_date, amount, now_iso),
                )
        return decision

    def check(
        self,
        credential_id: int,
        amount: int,
        on_behalf_of_user: str | None = None,
    ) -> QuotaCharge:
        if amount <= 0:
            raise ValueError(f"quota charge amount must be positive, got {amount}")

        usage_date = self.usage_date()
        with self._db.connection() as conn:
            return self._evaluate(
                conn,
                credential_id=credential_id,
                amount=amount,
                on_behalf_of_user=on_behalf_of_user,
                usage_date=usage_date,
            )

    def reset_all(self) -> QuotaResetResult:
        now_iso = utc_now_iso()
        with self._db.transaction() as conn:
            server_count = conn.execute(
                """
                UPDATE api_credentials
                SET usage = 0, updated_at = ?
                WHERE owner_type = 'SERVER'
                """,
                (now_iso,),
            ).rowcount
            user_count = conn.execute(
                """
                UPDATE api_credentials
                SET usage = 0, updated_at = ?
                WHERE owner_type = 'USER'
                """,
                (now_iso,),
            ).rowcount
        return QuotaResetResult(server_count=int(server_count), user_count=int(user_count))

    def user_usage_today(self, user_id: str) -> list[UserServerUsage]:
        usage_date = self.usage_date()
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT daily.credential_id, credentials.name, daily.usage_date, daily.usage
                FROM server_credential_usage_daily AS daily
                JOIN api_credentials AS credentials ON credentials.id = daily.credential_id
                WHERE daily.user_id = ? AND daily.usage_date = ?
                ORDER BY daily.credential_id ASC
                """,
                (user_id, usage_date),
            ).fetchall()
        return [
            UserServerUsage(
                credential_id=int(row["credential_id"]),
                credential_name=row["name"],
                usage_date=str(row["usage_date"]),
                usage=int(row["usage"]),
                user_daily_limit=self._user_daily_limit,
            )
            for row in rows
        ]

    def _evaluate(
        self,
        conn: sqlite3.Connection,
        *,
        credential_id: int,
        amount: int,
        on_behalf_of_user: str | None,
        usage_date: str,
    ) -> QuotaCharge:
        credential_row = conn.execute(
            "SELECT usage FROM api_credentials WHERE id = ?",
            (credential_id,),
        ).fetchone()
        if credential_row is None:
            return self._decision(
                committed=False,
                reason="credential_missing",
                credential_id=credential_id,
                amount=amount,
                credential_usage=0,
                on_behalf_of_user=on_behalf_of_user,
                user_usage=None,
                usage_date=usage_date,
            )

        credential_usage = int(credential_row["usage"])
        user_usage: int | None = None
        if on_behalf_of_user is not None:
            user_row = conn.execute(
                """
                SELECT usage
                FROM server_credential_usage_daily
                WHERE user_id = ? AND credential_id = ? AND usage_date = ?
                """,
                (on_behalf_of_user, credential_id, usage_date),
            ).fetchone()
            user_usage = int(user_row["usage"]) if user_row is not None else 0

        if credential_usage + amount > self._daily_limit:
            return self._decision(
                committed=False,
                reason="credential_limit",
                credential_id=credential_id,
                amount=amount,
                credential_usage=credential_usage,
                on_behalf_of_user=on_behalf_of_user,
                user_usage=user_usage,
                usage_date=usage_date,
            )

        if user_usage is not None and user_usage + amount > self._user_daily_limit:
            return self._decision(
                committed=False,
                reason="user_limit",
                credential_id=credential_id,
                amount=amount,
                credential_usage=credential_usage,
                on_behalf_of_user=on_behalf_of_user,
                user_usage=user_usage,
                usage_date=usage_date,
            )

        return self._decision(
            committed=True,
            reason="ok",
            credential_id=credential_id,
            amount=amount,
            credential_usage=credential_usage + amount,
            on_behalf_of_user=on_behalf_of_user,
            user_usage=user_usage + amount if user_usage is not None else None,
            usage_date=usage_date,
        )

    def _decision(
        self,
        *,
        committed: bool,
        reason: QuotaChargeReason,
        credential_id: int,
        amount: int,
        credential_usage: int,
        on_behalf_of_user: str | None,
        user_usage: int | None,
        usage_date: str,
    ) -> QuotaCharge:
        return QuotaCharge(
            committed=committed,
            reason=reason,
            credential_id=credential_id,
            amount=amount,
            credential_usage=credential_usage,
            daily_limit=self._daily_limit,
            user_id=on_behalf_of_user,
            user_usage=user_usage,
            user_daily_limit=self._user_daily_limit if on_behalf_of_user is not None else None,
            usage_date=usage_date,
        )
