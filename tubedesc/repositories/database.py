from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS channels (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    channel_id TEXT NOT NULL UNIQUE,
    title TEXT NULL,
    thumbnail_url TEXT NULL,
    subscriber_count INTEGER NOT NULL DEFAULT 0,
    access_token_encrypted TEXT NULL,
    refresh_token_encrypted TEXT NULL,
    token_expires_at TEXT NULL,
    token_status TEXT NOT NULL DEFAULT 'valid',
    sync_status TEXT NOT NULL DEFAULT 'idle',
    sync_lease_owner TEXT NULL,
    sync_lease_expires_at TEXT NULL,
    last_synced_at TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_channels_user ON channels(user_id);

CREATE TABLE IF NOT EXISTS templates (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS containers (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    separator TEXT NOT NULL DEFAULT (char(10) || char(10)),
    template_order_json TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    video_id TEXT NOT NULL,
    title TEXT NULL,
    current_description TEXT NULL,
    container_id TEXT NULL,
    published_at TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (channel_id, video_id),
    FOREIGN KEY(channel_id) REFERENCES channels(id) ON DELETE CASCADE,
    FOREIGN KEY(container_id) REFERENCES containers(id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_videos_container ON videos(container_id);

CREATE TABLE IF NOT EXISTS video_variables (
    id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    template_id TEXT NOT NULL,
    variable_name TEXT NOT NULL,
    variable_value TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (video_id, template_id, variable_name),
    FOREIGN KEY(video_id) REFERENCES videos(id) ON DELETE CASCADE,
    FOREIGN KEY(template_id) REFERENCES templates(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS description_history (
    id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    description TEXT NOT NULL,
    version_number INTEGER NOT NULL,
    created_by TEXT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (video_id, version_number),
    FOREIGN KEY(video_id) REFERENCES videos(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS sync_jobs (
    id TEXT PRIMARY KEY,
    job_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    next_run_at TEXT NOT NULL,
    last_error TEXT NULL,
    result_json TEXT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_jobs_status_next_run ON sync_jobs(status, next_run_at);

-- History rows are append-only.
CREATE TRIGGER IF NOT EXISTS trg_description_history_no_update
BEFORE UPDATE ON description_history
BEGIN
    SELECT RAISE(ABORT, 'description_history is append-only');
END;
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
