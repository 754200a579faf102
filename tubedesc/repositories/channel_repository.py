from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from sqlite3 import Row
from uuid import uuid4

from tubedesc.repositories.common import optional_str, parse_iso_datetime, to_utc_iso, utc_now_iso
from tubedesc.repositories.database import Database

TOKEN_STATUS_VALID = "valid"
TOKEN_STATUS_INVALID = "invalid"
SYNC_STATUS_IDLE = "idle"
SYNC_STATUS_SYNCING = "syncing"


@dataclass(frozen=True)
class ChannelRecord:
    id: str
    user_id: str
    channel_id: str
    title: str | None
    thumbnail_url: str | None
    subscriber_count: int
    access_token_encrypted: str | None
    refresh_token_encrypted: str | None
    token_expires_at: datetime | None
    token_status: str
    sync_status: str
    sync_lease_owner: str | None
    sync_lease_expires_at: datetime | None
    last_synced_at: datetime | None

    @property
    def reconnect_required(self) -> bool:
        return self.token_status == TOKEN_STATUS_INVALID


class ChannelRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get_channel(self, channel_id: str, *, user_id: str | None = None) -> ChannelRecord | None:
        query = "SELECT * FROM channels WHERE id = ?"
        params: tuple[str, ...] = (channel_id,)
        if user_id is not None:
            query += " AND user_id = ?"
            params = (channel_id, user_id)
        with self._db.connection() as conn:
            row = conn.execute(f"{query} LIMIT 1", params).fetchone()
        if row is None:
            return None
        return _row_to_channel(row)

    def get_channel_by_remote_id(self, remote_channel_id: str) -> ChannelRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM channels WHERE channel_id = ? LIMIT 1",
                (remote_channel_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_channel(row)

    def list_channels(self, *, token_status: str | None = None) -> list[ChannelRecord]:
        with self._db.connection() as conn:
            if token_status is None:
                rows = conn.execute("SELECT * FROM channels ORDER BY created_at ASC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM channels WHERE token_status = ? ORDER BY created_at ASC",
                    (token_status,),
                ).fetchall()
        return [_row_to_channel(row) for row in rows]

    def upsert_connected_channel(
        self,
        *,
        user_id: str,
        remote_channel_id: str,
        title: str | None,
        thumbnail_url: str | None,
        subscriber_count: int,
        access_token_encrypted: str,
        refresh_token_encrypted: str,
        token_expires_at: datetime | None,
    ) -> ChannelRecord:
        """Create the channel on first connect, or re-arm its credentials on reconnect."""
        now_iso = utc_now_iso()
        expires_iso = to_utc_iso(token_expires_at) if token_expires_at is not None else None
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO channels (
                    id, user_id, channel_id, title, thumbnail_url, subscriber_count,
                    access_token_encrypted, refresh_token_encrypted, token_expires_at,
                    token_status, sync_status, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(channel_id) DO UPDATE SET
                    user_id = excluded.user_id,
                    title = excluded.title,
                    thumbnail_url = excluded.thumbnail_url,
                    subscriber_count = excluded.subscriber_count,
                    access_token_encrypted = excluded.access_token_encrypted,
                    refresh_token_encrypted = excluded.refresh_token_encrypted,
                    token_expires_at = excluded.token_expires_at,
                    token_status = excluded.token_status,
                    updated_at = excluded.updated_at
                """,
                (
                    f"chan_{uuid4().hex}",
                    user_id,
                    remote_channel_id,
                    title,
                    thumbnail_url,
                    max(0, subscriber_count),
                    access_token_encrypted,
                    refresh_token_encrypted,
                    expires_iso,
                    TOKEN_STATUS_VALID,
                    SYNC_STATUS_IDLE,
                    now_iso,
                    now_iso,
                ),
            )
            row = conn.execute(
                "SELECT * FROM channels WHERE channel_id = ? LIMIT 1",
                (remote_channel_id,),
            ).fetchone()
        assert row is not None
        return _row_to_channel(row)

    def delete_channel(self, channel_id: str, *, user_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM channels WHERE id = ? AND user_id = ?",
                (channel_id, user_id),
            )
        return cursor.rowcount > 0

    def update_access_token(
        self,
        channel_id: str,
        *,
        access_token_encrypted: str,
        token_expires_at: datetime,
        refresh_token_encrypted: str | None = None,
    ) -> None:
        with self._db.connection() as conn:
            if refresh_token_encrypted is None:
                conn.execute(
                    """
                    UPDATE channels
                    SET access_token_encrypted = ?, token_expires_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        access_token_encrypted,
                        to_utc_iso(token_expires_at),
                        utc_now_iso(),
                        channel_id,
                    ),
                )
            else:
                conn.execute(
                    """
                    UPDATE channels
                    SET access_token_encrypted = ?, refresh_token_encrypted = ?,
                        token_expires_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        access_token_encrypted,
                        refresh_token_encrypted,
                        to_utc_iso(token_expires_at),
                        utc_now_iso(),
                        channel_id,
                    ),
                )

    def mark_token_invalid(self, channel_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE channels SET token_status = ?, updated_at = ? WHERE id = ?",
                (TOKEN_STATUS_INVALID, utc_now_iso(), channel_id),
            )

    def update_metadata(
        self,
        channel_id: str,
        *,
        title: str | None,
        thumbnail_url: str | None,
        subscriber_count: int | None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE channels
                SET title = COALESCE(?, title),
                    thumbnail_url = COALESCE(?, thumbnail_url),
                    subscriber_count = COALESCE(?, subscriber_count),
                    updated_at = ?
                WHERE id = ?
                """,
                (title, thumbnail_url, subscriber_count, utc_now_iso(), channel_id),
            )

    def try_begin_sync(self, channel_id: str, *, owner: str, lease_expires_at: datetime) -> bool:
        """
        Flip the channel to `syncing` unless another run holds an unexpired lease.

        The check and the write happen in one UPDATE so two workers sharing the
        database cannot both win.
        """
        now_iso = datetime.now(UTC).isoformat()
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE channels
                SET sync_status = ?, sync_lease_owner = ?, sync_lease_expires_at = ?, updated_at = ?
                WHERE id = ?
                  AND (
                    sync_status = ?
                    OR sync_lease_expires_at IS NULL
                    OR sync_lease_expires_at <= ?
                  )
                """,
                (
                    SYNC_STATUS_SYNCING,
                    owner,
                    to_utc_iso(lease_expires_at),
                    now_iso,
                    channel_id,
                    SYNC_STATUS_IDLE,
                    now_iso,
                ),
            )
        return cursor.rowcount > 0

    def finish_sync(self, channel_id: str, *, owner: str, synced_at: datetime | None) -> None:
        """Release the sync flag. `synced_at` is only stamped for completed runs."""
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE channels
                SET sync_status = ?,
                    sync_lease_owner = NULL,
                    sync_lease_expires_at = NULL,
                    last_synced_at = COALESCE(?, last_synced_at),
                    updated_at = ?
                WHERE id = ? AND (sync_lease_owner = ? OR sync_lease_owner IS NULL)
                """,
                (
                    SYNC_STATUS_IDLE,
                    to_utc_iso(synced_at) if synced_at is not None else None,
                    utc_now_iso(),
                    channel_id,
                    owner,
                ),
            )


def _row_to_channel(row: Row) -> ChannelRecord:
    return ChannelRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        channel_id=str(row["channel_id"]),
        title=optional_str(row["title"]),
        thumbnail_url=optional_str(row["thumbnail_url"]),
        subscriber_count=int(row["subscriber_count"] or 0),
        access_token_encrypted=optional_str(row["access_token_encrypted"]),
        refresh_token_encrypted=optional_str(row["refresh_token_encrypted"]),
        token_expires_at=parse_iso_datetime(row["token_expires_at"]),
        token_status=str(row["token_status"]),
        sync_status=str(row["sync_status"]),
        sync_lease_owner=optional_str(row["sync_lease_owner"]),
        sync_lease_expires_at=parse_iso_datetime(row["sync_lease_expires_at"]),
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
    )
