from __future__ import annotations

import sqlite3
from collections.abc import Collection
from dataclasses import dataclass
from typing import Literal

from trendfeed.repositories.common import utc_now_iso
from trendfeed.repositories.database import Database

OwnerType = Literal["SERVER", "USER"]


@dataclass(frozen=True)
class CredentialRecord:
    id: int
    owner_type: OwnerType
    user_id: str | None
    name: str | None
    api_key: str
    is_active: bool
    usage: int
    created_at: str
    updated_at: str


class CredentialRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, credential_id: int) -> CredentialRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM api_credentials WHERE id = ?",
                (credential_id,),
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def get_user_credential(self, user_id: str) -> CredentialRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM api_credentials
                WHERE owner_type = 'USER' AND user_id = ?
                """,
                (user_id,),
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def get_server_credential(self, name: str) -> CredentialRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM api_credentials
                WHERE owner_type = 'SERVER' AND name = ?
                """,
                (name,),
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_selectable_server_credentials(
        self,
        *,
        daily_limit: int,
        exclude: Collection[int] = (),
    ) -> list[CredentialRecord]:
        """Active server credentials below the cap, least used first."""
        excluded = sorted(set(exclude))
        placeholders = ", ".join("?" for _ in excluded)
        exclusion_sql = f"AND id NOT IN ({placeholders})" if excluded else ""
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT *
                FROM api_credentials
                WHERE owner_type = 'SERVER'
                  AND is_active = 1
                  AND usage < ?
                  {exclusion_sql}
                ORDER BY usage ASC, id ASC
                """,
                (daily_limit, *excluded),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def list_server_credentials(self) -> list[CredentialRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM api_credentials
                WHERE owner_type = 'SERVER'
                ORDER BY name ASC
                """
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def upsert_user_credential(self, user_id: str, api_key: str) -> CredentialRecord:
        now_iso = utc_now_iso()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO api_credentials
                (owner_type, user_id, name, api_key, is_active, usage, created_at, updated_at)
                VALUES ('USER', ?, NULL, ?, 1, 0, ?, ?)
                ON CONFLICT(user_id) WHERE owner_type = 'USER' DO UPDATE SET
                    api_key = excluded.api_key,
                    is_active = 1,
                    updated_at = excluded.updated_at
                """,
                (user_id, api_key, now_iso, now_iso),
            )
            row = _fetch_one(
                conn,
                "SELECT * FROM api_credentials WHERE owner_type = 'USER' AND user_id = ?",
                (user_id,),
            )
        return _row_to_record(row)

    def delete_user_credential(self, user_id: str) -> bool:
        with self._db.transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM api_credentials WHERE owner_type = 'USER' AND user_id = ?",
                (user_id,),
            ).rowcount
        return deleted > 0

    def upsert_server_credential(
        self,
        name: str,
        api_key: str,
        *,
        is_active: bool = True,
    ) -> CredentialRecord:
        now_iso = utc_now_iso()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO api_credentials
                (owner_type, user_id, name, api_key, is_active, usage, created_at, updated_at)
                VALUES ('SERVER', NULL, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(name) WHERE owner_type = 'SERVER' DO UPDATE SET
                    api_key = excluded.api_key,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (name, api_key, 1 if is_active else 0, now_iso, now_iso),
            )
            row = _fetch_one(
                conn,
                "SELECT * FROM api_credentials WHERE owner_type = 'SERVER' AND name = ?",
                (name,),
            )
        return _row_to_record(row)

    def delete_server_credential(self, name: str) -> bool:
        with self._db.transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM api_credentials WHERE owner_type = 'SERVER' AND name = ?",
                (name,),
            ).rowcount
        return deleted > 0


def _fetch_one(
    conn: sqlite3.Connection,
    sql: str,
    params: tuple[object, ...],
) -> sqlite3.Row:
    row = conn.execute(sql, params).fetchone()
    if row is None:
        raise LookupError("credential row vanished inside its own transaction")
    return row


def _row_to_record(row: sqlite3.Row) -> CredentialRecord:
    owner_type: OwnerType = "SERVER" if str(row["owner_type"]) == "SERVER" else "USER"
    return CredentialRecord(
        id=int(row["id"]),
        owner_type=owner_type,
        user_id=row["user_id"],
        name=row["name"],
        api_key=str(row["api_key"]),
        is_active=bool(row["is_active"]),
        usage=int(row["usage"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )
