from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Generic, Literal, TypeVar

from trendfeed.repositories.common import utc_now_iso
from trendfeed.repositories.database import Database

T = TypeVar("T")

ListOrderBy = Literal["view_count", "subscriber_count", "created_at"]
SortOrder = Literal["asc", "desc"]

_SUBSCRIPTION_SELECT = """
    SELECT subscriptions.id AS subscription_id,
           subscriptions.user_id AS subscription_user_id,
           subscriptions.created_at AS subscription_created_at,
           channels.*
    FROM subscriptions
    JOIN channels ON channels.id = subscriptions.channel_id
"""


@dataclass(frozen=True)
class ChannelSnapshot:
    """Platform-side view of a channel, as written by registration and refresh."""

    channel_id: str
    name: str
    handle: str | None
    description: str | None
    thumbnail_url: str | None
    region_code: str | None
    default_language: str | None
    video_count: int
    view_count: int
    subscriber_count: int
    uploads_playlist_id: str | None
    published_at: str | None


@dataclass(frozen=True)
class ChannelRecord:
    id: int
    channel_id: str
    handle: str | None
    name: str
    description: str | None
    thumbnail_url: str | None
    region_code: str | None
    default_language: str | None
    video_count: int
    view_count: int
    subscriber_count: int
    uploads_playlist_id: str | None
    published_at: str | None
    last_video_uploaded_at: str | None
    fetched_at: str
    created_at: str


@dataclass(frozen=True)
class ChannelHistoryRecord:
    id: int
    channel_id: int
    video_count: int
    view_count: int
    subscriber_count: int
    created_at: str


@dataclass(frozen=True)
class ChannelRefreshUpdate:
    channel_pk: int
    snapshot: ChannelSnapshot
    # None keeps the stored value.
    last_video_uploaded_at: str | None


@dataclass(frozen=True)
class SubscriptionRecord:
    id: int
    user_id: str
    channel: ChannelRecord
    created_at: str


@dataclass(frozen=True)
class ListQuery:
    """Keyset page request; `cursor` is the row id the previous page ended on."""

    order_by: ListOrderBy = "created_at"
    order: SortOrder = "desc"
    cursor: int | None = None
    take: int = 20


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T]
    next_cursor: int | None
    has_next: bool


class ChannelRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, channel_pk: int) -> ChannelRecord | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM channels WHERE id = ?", (channel_pk,)).fetchone()
        return _row_to_channel(row) if row is not None else None

    def get_by_channel_id(self, channel_id: str) -> ChannelRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM channels WHERE channel_id = ?",
                (channel_id,),
            ).fetchone()
        return _row_to_channel(row) if row is not None else None

    def get_by_handle(self, handle: str) -> ChannelRecord | None:
        normalized = normalize_handle(handle)
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM channels WHERE lower(handle) = lower(?)",
                (normalized,),
            ).fetchone()
        return _row_to_channel(row) if row is not None else None

    def get_many_by_channel_ids(self, channel_ids: Iterable[str]) -> dict[str, ChannelRecord]:
        unique_ids = list(dict.fromkeys(channel_ids))
        if not unique_ids:
            return {}
        placeholders = ", ".join("?" for _ in unique_ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM channels WHERE channel_id IN ({placeholders})",
                tuple(unique_ids),
            ).fetchall()
        records = [_row_to_channel(row) for row in rows]
        return {record.channel_id: record for record in records}

    def list_channels(self) -> list[ChannelRecord]:
        with self._db.connection() as conn:
            rows = conn.execute("SELECT * FROM channels ORDER BY id ASC").fetchall()
        return [_row_to_channel(row) for row in rows]

    def page_channels(self, query: ListQuery) -> Page[ChannelRecord]:
        return self._keyset_page(
            select_sql="SELECT * FROM channels",
            filters=[],
            params=[],
            sort_column=f"channels.{query.order_by}",
            id_column="channels.id",
            query=query,
            convert=_row_to_channel,
            row_id=lambda record: record.id,
        )

    def register(
        self,
        snapshot: ChannelSnapshot,
        *,
        last_video_uploaded_at: str | None = None,
    ) -> ChannelRecord:
        """Insert a channel seen for the first time; an existing row is returned untouched."""
        now_iso = utc_now_iso()
        with self._db.transaction() as conn:
            existing = conn.execute(
                "SELECT * FROM channels WHERE channel_id = ?",
                (snapshot.channel_id,),
            ).fetchone()
            if existing is not None:
                return _row_to_channel(existing)

            cursor = conn.execute(
                """
                INSERT INTO channels (
                    channel_id, handle, name, description, thumbnail_url, region_code,
                    default_language, video_count, view_count, subscriber_count,
                    uploads_playlist_id, published_at, last_video_uploaded_at,
                    fetched_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.channel_id,
                    snapshot.handle,
                    snapshot.name,
                    snapshot.description,
                    snapshot.thumbnail_url,
                    snapshot.region_code,
                    snapshot.default_language,
                    snapshot.video_count,
                    snapshot.view_count,
                    snapshot.subscriber_count,
                    snapshot.uploads_playlist_id,
                    snapshot.published_at,
                    last_video_uploaded_at,
                    now_iso,
                    now_iso,
                ),
            )
            channel_pk = int(cursor.lastrowid or 0)
            _insert_history(conn, channel_pk=channel_pk, snapshot=snapshot, created_at=now_iso)
            row = conn.execute("SELECT * FROM channels WHERE id = ?", (channel_pk,)).fetchone()
        return _row_to_channel(row)

    def apply_refresh(self, updates: Sequence[ChannelRefreshUpdate]) -> int:
        """Overwrite snapshots and append one history row per channel, all or nothing."""
        if not updates:
            return 0
        now_iso = utc_now_iso()
        with self._db.transaction() as conn:
            for update in updates:
                snapshot = update.snapshot
                conn.execute(
                    """
                    UPDATE channels SET
                        handle = ?,
                        name = ?,
                        description = ?,
                        thumbnail_url = ?,
                        region_code = ?,
                        default_language = ?,
                        video_count = ?,
                        view_count = ?,
                        subscriber_count = ?,
                        uploads_playlist_id = ?,
                        published_at = ?,
                        last_video_uploaded_at = COALESCE(?, last_video_uploaded_at),
                        fetched_at = ?
                    WHERE id = ?
                    """,
                    (
                        snapshot.handle,
                        snapshot.name,
                        snapshot.description,
                        snapshot.thumbnail_url,
                        snapshot.region_code,
                        snapshot.default_language,
                        snapshot.video_count,
                        snapshot.view_count,
                        snapshot.subscriber_count,
                        snapshot.uploads_playlist_id,
                        snapshot.published_at,
                        update.last_video_uploaded_at,
                        now_iso,
                        update.channel_pk,
                    ),
                )
                _insert_history(
                    conn,
                    channel_pk=update.channel_pk,
                    snapshot=snapshot,
                    created_at=now_iso,
                )
        return len(updates)

    def list_history(self, channel_pk: int) -> list[ChannelHistoryRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM channel_histories
                WHERE channel_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (channel_pk,),
            ).fetchall()
        return [
            ChannelHistoryRecord(
                id=int(row["id"]),
                channel_id=int(row["channel_id"]),
                video_count=int(row["video_count"]),
                view_count=int(row["view_count"]),
                subscriber_count=int(row["subscriber_count"]),
                created_at=str(row["created_at"]),
            )
            for row in rows
        ]

    def subscribe(self, user_id: str, channel_pk: int) -> SubscriptionRecord:
        now_iso = utc_now_iso()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO subscriptions (user_id, channel_id, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id, channel_id) DO NOTHING
                """,
                (user_id, channel_pk, now_iso),
            )
            row = conn.execute(
                f"{_SUBSCRIPTION_SELECT} WHERE subscriptions.user_id = ? AND subscriptions.channel_id = ?",
                (user_id, channel_pk),
            ).fetchone()
        return _row_to_subscription(row)

    def unsubscribe(self, user_id: str, channel_pk: int) -> bool:
        with self._db.transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM subscriptions WHERE user_id = ? AND channel_id = ?",
                (user_id, channel_pk),
            ).rowcount
        return deleted > 0

    def unsubscribe_many(self, user_id: str, subscription_ids: Sequence[int]) -> list[int]:
        """Delete the listed subscriptions the user owns; returns the ids actually deleted."""
        unique_ids = list(dict.fromkeys(subscription_ids))
        if not unique_ids:
            return []
        placeholders = ", ".join("?" for _ in unique_ids)
        with self._db.transaction() as conn:
            owned = conn.execute(
                f"""
                SELECT id FROM subscriptions
                WHERE user_id = ? AND id IN ({placeholders})
                ORDER BY id ASC
                """,
                (user_id, *unique_ids),
            ).fetchall()
            owned_ids = [int(row["id"]) for row in owned]
            if owned_ids:
                conn.execute(
                    f"DELETE FROM subscriptions WHERE id IN ({', '.join('?' for _ in owned_ids)})",
                    tuple(owned_ids),
                )
        return owned_ids

    def page_subscriptions(self, user_id: str, query: ListQuery) -> Page[SubscriptionRecord]:
        # Channel counters sort on the joined channel; created_at is when the user subscribed.
        sort_table = "subscriptions" if query.order_by == "created_at" else "channels"
        return self._keyset_page(
            select_sql=_SUBSCRIPTION_SELECT,
            filters=["subscriptions.user_id = ?"],
            params=[user_id],
            sort_column=f"{sort_table}.{query.order_by}",
            id_column="subscriptions.id",
            query=query,
            convert=_row_to_subscription,
            row_id=lambda record: record.id,
        )

    def _keyset_page(
        self,
        *,
        select_sql: str,
        filters: list[str],
        params: list[object],
        sort_column: str,
        id_column: str,
        query: ListQuery,
        convert: Callable[[sqlite3.Row], T],
        row_id: Callable[[T], int],
    ) -> Page[T]:
        """Order by `sort_column` with the row id as tie-break and resume after `query.cursor`.

        A cursor that no longer matches a visible row yields an empty last page.
        """
        descending = query.order == "desc"
        direction = "DESC" if descending else "ASC"
        comparison = "<" if descending else ">"
        clauses = list(filters)
        values = list(params)
        with self._db.connection() as conn:
            if query.cursor is not None:
                anchor_where = " AND ".join([*filters, f"{id_column} = ?"])
                from_sql = select_sql[select_sql.index("FROM") :]
                anchor = conn.execute(
                    f"SELECT {sort_column} AS sort_value {from_sql} WHERE {anchor_where}",
                    (*params, query.cursor),
                ).fetchone()
                if anchor is None:
                    return Page(items=[], next_cursor=None, has_next=False)
                clauses.append(
                    f"({sort_column} {comparison} ? OR ({sort_column} = ? AND {id_column} {comparison} ?))"
                )
                values.extend([anchor["sort_value"], anchor["sort_value"], query.cursor])

            where_sql = f" WHERE {' AND '.join(clauses)}" if clauses else ""
            rows = conn.execute(
                f"{select_sql}{where_sql} ORDER BY {sort_column} {direction}, {id_column} {direction} LIMIT ?",
                (*values, query.take + 1),
            ).fetchall()

        items = [convert(row) for row in rows[: query.take]]
        has_next = len(rows) > query.take
        return Page(
            items=items,
            next_cursor=row_id(items[-1]) if has_next and items else None,
            has_next=has_next,
        )


def normalize_handle(handle: str) -> str:
    stripped = handle.strip()
    if stripped and not stripped.startswith("@"):
        return f"@{stripped}"
    return stripped


def _insert_history(
    conn: sqlite3.Connection,
    *,
    channel_pk: int,
    snapshot: ChannelSnapshot,
    created_at: str,
) -> None:
    conn.execute(
        """
        INSERT INTO channel_histories
        (channel_id, video_count, view_count, subscriber_count, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            channel_pk,
            snapshot.video_count,
            snapshot.view_count,
            snapshot.subscriber_count,
            created_at,
        ),
    )


def _row_to_channel(row: sqlite3.Row) -> ChannelRecord:
    return ChannelRecord(
        id=int(row["id"]),
        channel_id=str(row["channel_id"]),
        handle=row["handle"],
        name=str(row["name"]),
        description=row["description"],
        thumbnail_url=row["thumbnail_url"],
        region_code=row["region_code"],
        default_language=row["default_language"],
        video_count=int(row["video_count"]),
        view_count=int(row["view_count"]),
        subscriber_count=int(row["subscriber_count"]),
        uploads_playlist_id=row["uploads_playlist_id"],
        published_at=row["published_at"],
        last_video_uploaded_at=row["last_video_uploaded_at"],
        fetched_at=str(row["fetched_at"]),
        created_at=str(row["created_at"]),
    )


def _row_to_subscription(row: sqlite3.Row) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=int(row["subscription_id"]),
        user_id=str(row["subscription_user_id"]),
        channel=_row_to_channel(row),
        created_at=str(row["subscription_created_at"]),
    )
