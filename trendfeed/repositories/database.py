from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

# Writers queue on the database lock instead of failing with "database is locked".
BUSY_TIMEOUT_SECONDS = 30.0

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS api_credentials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_type TEXT NOT NULL CHECK (owner_type IN ('SERVER', 'USER')),
    user_id TEXT NULL,
    name TEXT NULL,
    api_key TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    usage INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_api_credentials_user
ON api_credentials(user_id) WHERE owner_type = 'USER';

CREATE UNIQUE INDEX IF NOT EXISTS idx_api_credentials_server_name
ON api_credentials(name) WHERE owner_type = 'SERVER';

CREATE INDEX IF NOT EXISTS idx_api_credentials_selection
ON api_credentials(owner_type, is_active, usage);

CREATE TABLE IF NOT EXISTS server_credential_usage_daily (
    user_id TEXT NOT NULL,
    credential_id INTEGER NOT NULL,
    usage_date TEXT NOT NULL,
    usage INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, credential_id, usage_date),
    FOREIGN KEY(credential_id) REFERENCES api_credentials(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS channels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id TEXT NOT NULL UNIQUE,
    handle TEXT NULL,
    name TEXT NOT NULL,
    description TEXT NULL,
    thumbnail_url TEXT NULL,
    region_code TEXT NULL,
    default_language TEXT NULL,
    video_count INTEGER NOT NULL DEFAULT 0,
    view_count INTEGER NOT NULL DEFAULT 0,
    subscriber_count INTEGER NOT NULL DEFAULT 0,
    uploads_playlist_id TEXT NULL,
    published_at TEXT NULL,
    last_video_uploaded_at TEXT NULL,
    fetched_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_channels_handle ON channels(handle);

CREATE TABLE IF NOT EXISTS channel_histories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id INTEGER NOT NULL,
    video_count INTEGER NOT NULL,
    view_count INTEGER NOT NULL,
    subscriber_count INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY(channel_id) REFERENCES channels(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_channel_histories_channel_created
ON channel_histories(channel_id, created_at);

CREATE TABLE IF NOT EXISTS subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    channel_id INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, channel_id),
    FOREIGN KEY(channel_id) REFERENCES channels(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS scheduler_state (
    job_name TEXT PRIMARY KEY,
    last_run_date TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block under the database write lock (`BEGIN IMMEDIATE`).

        Concurrent writers, in this process or another, serialize on the lock.
        Any exception rolls the whole block back.
        """
        conn = self._connect()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
