from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from sqlite3 import Row
from typing import Any
from uuid import uuid4

from tubedesc.repositories.common import (
    load_object_dict,
    optional_str,
    parse_iso_datetime,
    utc_now_iso,
)
from tubedesc.repositories.database import Database

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_RUNNING = "running"
JOB_STATUS_SUCCEEDED = "succeeded"
JOB_STATUS_FAILED = "failed"


@dataclass(frozen=True)
class SyncJob:
    job_id: str
    job_type: str
    payload: dict[str, Any]
    status: str
    attempts: int
    next_run_at: datetime
    last_error: str | None
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


class JobsRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def enqueue_job(
        self,
        *,
        job_type: str,
        payload: dict[str, Any],
        run_at: datetime | None = None,
    ) -> str:
        job_id = f"job_{uuid4().hex}"
        now_iso = utc_now_iso()
        next_run_at = (run_at or datetime.now(UTC)).astimezone(UTC).isoformat()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_jobs
                (id, job_type, payload_json, status, attempts, next_run_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    job_id,
                    job_type,
                    json.dumps(payload, sort_keys=True),
                    JOB_STATUS_QUEUED,
                    next_run_at,
                    now_iso,
                    now_iso,
                ),
            )
        return job_id

    def has_open_job(self, *, job_type: str, payload_key: str, payload_value: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT 1
                FROM sync_jobs
                WHERE job_type = ?
                  AND status IN (?, ?)
                  AND json_extract(payload_json, ?) = ?
                LIMIT 1
                """,
                (
                    job_type,
                    JOB_STATUS_QUEUED,
                    JOB_STATUS_RUNNING,
                    f"$.{payload_key}",
                    payload_value,
                ),
            ).fetchone()
        return row is not None

    def get_job(self, job_id: str) -> SyncJob | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM sync_jobs WHERE id = ? LIMIT 1", (job_id,)).fetchone()
        if row is None:
            return None
        return _row_to_job(row)

    def claim_due_jobs(self, *, limit: int) -> list[SyncJob]:
        now_iso = utc_now_iso()
        claimed: list[SyncJob] = []
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id
                FROM sync_jobs
                WHERE status = ? AND next_run_at <= ?
                ORDER BY next_run_at ASC, created_at ASC
                LIMIT ?
                """,
                (JOB_STATUS_QUEUED, now_iso, max(1, min(limit, 100))),
            ).fetchall()
            for row in rows:
                job_id = str(row["id"])
                updated = conn.execute(
                    """
                    UPDATE sync_jobs
                    SET status = ?, attempts = attempts + 1, updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (JOB_STATUS_RUNNING, now_iso, job_id, JOB_STATUS_QUEUED),
                )
                if updated.rowcount <= 0:
                    continue
                claimed_row = conn.execute(
                    "SELECT * FROM sync_jobs WHERE id = ? LIMIT 1",
                    (job_id,),
                ).fetchone()
                if claimed_row is not None:
                    claimed.append(_row_to_job(claimed_row))
        return claimed

    def mark_job_succeeded(self, job_id: str, *, result: dict[str, Any]) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE sync_jobs
                SET status = ?, result_json = ?, last_error = NULL, updated_at = ?
                WHERE id = ?
                """,
                (JOB_STATUS_SUCCEEDED, json.dumps(result, sort_keys=True), utc_now_iso(), job_id),
            )

    def mark_job_retry(self, *, job_id: str, retry_after_seconds: int, last_error: str) -> None:
        now = datetime.now(UTC)
        next_run_at = now + timedelta(seconds=max(1, retry_after_seconds))
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE sync_jobs
                SET status = ?, next_run_at = ?, last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (JOB_STATUS_QUEUED, next_run_at.isoformat(), last_error, now.isoformat(), job_id),
            )

    def mark_job_failed(
        self,
        *,
        job_id: str,
        last_error: str,
        result: dict[str, Any] | None = None,
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE sync_jobs
                SET status = ?, last_error = ?, result_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    JOB_STATUS_FAILED,
                    last_error,
                    json.dumps(result, sort_keys=True) if result is not None else None,
                    utc_now_iso(),
                    job_id,
                ),
            )


def _row_to_job(row: Row) -> SyncJob:
    now = datetime.now(UTC)
    raw_result = row["result_json"]
    return SyncJob(
        job_id=str(row["id"]),
        job_type=str(row["job_type"]),
        payload=load_object_dict(row["payload_json"]),
        status=str(row["status"]),
        attempts=int(row["attempts"]),
        next_run_at=parse_iso_datetime(row["next_run_at"]) or now,
        last_error=optional_str(row["last_error"]),
        result=load_object_dict(raw_result) if raw_result is not None else None,
        created_at=parse_iso_datetime(row["created_at"]) or now,
        updated_at=parse_iso_datetime(row["updated_at"]) or now,
    )
