from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from sqlite3 import Connection, Row
from uuid import uuid4

from tubedesc.repositories.common import optional_str, parse_iso_datetime, utc_now_iso
from tubedesc.repositories.database import Database


@dataclass(frozen=True)
class VideoRecord:
    id: str
    channel_id: str
    video_id: str
    title: str | None
    current_description: str | None
    container_id: str | None
    published_at: datetime | None


@dataclass(frozen=True)
class HistoryEntry:
    video_id: str
    version_number: int
    description: str
    created_by: str | None
    created_at: datetime | None


@dataclass(frozen=True)
class CatalogEntry:
    video_id: str
    title: str
    description: str
    published_at: str | None


@dataclass(frozen=True)
class LocalCatalogState:
    video_id: str
    title: str | None
    published_at: str | None


@dataclass(frozen=True)
class CatalogChangeCounts:
    inserted: int
    updated: int
    deleted: int


class VideoRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get_video(self, video_pk: str, *, user_id: str | None = None) -> VideoRecord | None:
        query = "SELECT videos.* FROM videos"
        params: tuple[str, ...] = (video_pk,)
        if user_id is not None:
            query += " JOIN channels ON channels.id = videos.channel_id"
            query += " WHERE videos.id = ? AND channels.user_id = ?"
            params = (video_pk, user_id)
        else:
            query += " WHERE videos.id = ?"
        with self._db.connection() as conn:
            row = conn.execute(f"{query} LIMIT 1", params).fetchone()
        if row is None:
            return None
        return _row_to_video(row)

    def get_videos(self, video_pks: Iterable[str]) -> dict[str, VideoRecord]:
        ids = list(dict.fromkeys(video_pks))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM videos WHERE id IN ({placeholders})",
                ids,
            ).fetchall()
        return {str(row["id"]): _row_to_video(row) for row in rows}

    def list_video_ids_for_containers(self, container_ids: Iterable[str]) -> list[str]:
        ids = list(dict.fromkeys(container_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT id FROM videos
                WHERE container_id IN ({placeholders})
                ORDER BY published_at DESC, id ASC
                """,
                ids,
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def assign_container(self, video_pk: str, container_id: str | None) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE videos SET container_id = ?, updated_at = ? WHERE id = ?",
                (container_id, utc_now_iso(), video_pk),
            )

    def list_catalog_state(self, channel_id: str) -> dict[str, LocalCatalogState]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT video_id, title, published_at FROM videos WHERE channel_id = ?",
                (channel_id,),
            ).fetchall()
        return {
            str(row["video_id"]): LocalCatalogState(
                video_id=str(row["video_id"]),
                title=optional_str(row["title"]),
                published_at=optional_str(row["published_at"]),
            )
            for row in rows
        }

    def apply_catalog_changes(
        self,
        channel_id: str,
        *,
        inserts: list[CatalogEntry],
        updates: list[CatalogEntry],
        deletes: list[str],
        actor: str | None,
    ) -> CatalogChangeCounts:
        """Apply one reconciliation diff atomically.

        Inserted videos are seeded with history version 1 holding the fetched
        description. Updates touch title and publish time only.
        """
        now_iso = utc_now_iso()
        inserted = 0
        updated = 0
        deleted = 0
        with self._db.connection() as conn:
            for entry in inserts:
                video_pk = f"vid_{uuid4().hex}"
                cursor = conn.execute(
                    """
                    INSERT INTO videos (
                        id, channel_id, video_id, title, current_description,
                        published_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(channel_id, video_id) DO NOTHING
                    """,
                    (
                        video_pk,
                        channel_id,
                        entry.video_id,
                        entry.title,
                        entry.description,
                        entry.published_at,
                        now_iso,
                        now_iso,
                    ),
                )
                if cursor.rowcount <= 0:
                    continue
                _append_history(conn, video_pk=video_pk, description=entry.description, actor=actor)
                inserted += 1

            for entry in updates:
                cursor = conn.execute(
                    """
                    UPDATE videos
                    SET title = ?, published_at = ?, updated_at = ?
                    WHERE channel_id = ? AND video_id = ?
                    """,
                    (entry.title, entry.published_at, now_iso, channel_id, entry.video_id),
                )
                updated += max(0, cursor.rowcount)

            for remote_video_id in deletes:
                cursor = conn.execute(
                    "DELETE FROM videos WHERE channel_id = ? AND video_id = ?",
                    (channel_id, remote_video_id),
                )
                deleted += max(0, cursor.rowcount)

        return CatalogChangeCounts(inserted=inserted, updated=updated, deleted=deleted)

    def record_description_update(
        self,
        video_pk: str,
        *,
        description: str,
        actor: str | None,
    ) -> int:
        """Append the next history version and move the cached description with it."""
        with self._db.connection() as conn:
            version = _append_history(conn, video_pk=video_pk, description=description, actor=actor)
            conn.execute(
                "UPDATE videos SET current_description = ?, updated_at = ? WHERE id = ?",
                (description, utc_now_iso(), video_pk),
            )
        return version

    def list_history(self, video_pk: str) -> list[HistoryEntry]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT video_id, version_number, description, created_by, created_at
                FROM description_history
                WHERE video_id = ?
                ORDER BY version_number DESC
                """,
                (video_pk,),
            ).fetchall()
        return [_row_to_history(row) for row in rows]

    def latest_history(self, video_pk: str) -> HistoryEntry | None:
        history = self.list_history(video_pk)
        return history[0] if history else None


def _append_history(conn: Connection, *, video_pk: str, description: str, actor: str | None) -> int:
    row = conn.execute(
        "SELECT COALESCE(MAX(version_number), 0) AS current FROM description_history WHERE video_id = ?",
        (video_pk,),
    ).fetchone()
    next_version = int(row["current"]) + 1
    conn.execute(
        """
        INSERT INTO description_history
        (id, video_id, description, version_number, created_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (f"hist_{uuid4().hex}", video_pk, description, next_version, actor, utc_now_iso()),
    )
    return next_version


def _row_to_video(row: Row) -> VideoRecord:
    return VideoRecord(
        id=str(row["id"]),
        channel_id=str(row["channel_id"]),
        video_id=str(row["video_id"]),
        title=optional_str(row["title"]),
        current_description=optional_str(row["current_description"]),
        container_id=optional_str(row["container_id"]),
        published_at=parse_iso_datetime(row["published_at"]),
    )


def _row_to_history(row: Row) -> HistoryEntry:
    return HistoryEntry(
        video_id=str(row["video_id"]),
        version_number=int(row["version_number"]),
        description=str(row["description"]),
        created_by=optional_str(row["created_by"]),
        created_at=parse_iso_datetime(row["created_at"]),
    )
