from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from structlog.contextvars import bind_contextvars, reset_contextvars

from tubedesc.repositories.channel_repository import TOKEN_STATUS_VALID, ChannelRepository
from tubedesc.repositories.jobs_repository import JobsRepository, SyncJob
from tubedesc.services.catalog_reconciler import CatalogReconciler
from tubedesc.services.errors import SyncTerminalError, TransientSyncError
from tubedesc.services.update_dispatcher import UpdateDispatcher
from tubedesc.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubedesc.jobs")

JOB_TYPE_CHANNEL_SYNC = "channel.sync"
JOB_TYPE_VIDEOS_UPDATE = "videos.update"
UNEXPECTED_ERROR_RETRY_SECONDS = 60
MAX_VIDEO_IDS_PER_JOB = 10000
DEFAULT_VIDEOS_PER_JOB = 1000


class ChannelSyncTrigger(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel_id: str = Field(min_length=1, max_length=120)
    user_id: str = Field(min_length=1, max_length=120)


class VideosUpdateTrigger(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_ids: list[str] = Field(min_length=1, max_length=MAX_VIDEO_IDS_PER_JOB)
    user_id: str = Field(min_length=1, max_length=120)
    retry_round: int = Field(default=0, ge=0)


@dataclass(frozen=True)
class JobProcessingStats:
    attempted: int
    succeeded: int
    retried: int
    failed: int


class JobRunner:
    def __init__(
        self,
        *,
        jobs_repository: JobsRepository,
        channel_repository: ChannelRepository,
        catalog_reconciler: CatalogReconciler,
        update_dispatcher: UpdateDispatcher,
        max_attempts: int = 5,
        retry_base_seconds: int = 30,
        retry_max_seconds: int = 3600,
        videos_per_job: int = DEFAULT_VIDEOS_PER_JOB,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._jobs_repository = jobs_repository
        self._channel_repository = channel_repository
        self._catalog_reconciler = catalog_reconciler
        self._update_dispatcher = update_dispatcher
        self._max_attempts = max(1, max_attempts)
        self._retry_base_seconds = max(1, retry_base_seconds)
        self._retry_max_seconds = max(self._retry_base_seconds, retry_max_seconds)
        self._videos_per_job = min(MAX_VIDEO_IDS_PER_JOB, max(1, videos_per_job))
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def enqueue_channel_sync(self, *, channel_id: str, user_id: str) -> str:
        trigger = ChannelSyncTrigger(channel_id=channel_id, user_id=user_id)
        return self._jobs_repository.enqueue_job(
            job_type=JOB_TYPE_CHANNEL_SYNC,
            payload=trigger.model_dump(),
        )

    def enqueue_video_update(
        self,
        *,
        video_ids: Sequence[str],
        user_id: str,
        run_at: datetime | None = None,
        retry_round: int = 0,
    ) -> list[str]:
        """Queue `videos.update` jobs, splitting large selections into several jobs."""
        unique_ids = list(dict.fromkeys(video_ids))
        job_ids: list[str] = []
        for start in range(0, len(unique_ids), self._videos_per_job):
            trigger = VideosUpdateTrigger(
                video_ids=unique_ids[start : start + self._videos_per_job],
                user_id=user_id,
                retry_round=retry_round,
            )
            job_ids.append(
                self._jobs_repository.enqueue_job(
                    job_type=JOB_TYPE_VIDEOS_UPDATE,
                    payload=trigger.model_dump(),
                    run_at=run_at,
                )
            )
        if len(job_ids) > 1:
            LOGGER.info(
                "video update split into jobs count=%s videos=%s",
                len(job_ids),
                len(unique_ids),
            )
        return job_ids

    def enqueue_scheduled_syncs(self) -> int:
        """Queue a sync for every healthy channel that has none pending."""
        enqueued = 0
        for channel in self._channel_repository.list_channels(token_status=TOKEN_STATUS_VALID):
            if self._jobs_repository.has_open_job(
                job_type=JOB_TYPE_CHANNEL_SYNC,
                payload_key="channel_id",
                payload_value=channel.id,
            ):
                continue
            self.enqueue_channel_sync(channel_id=channel.id, user_id=channel.user_id)
            enqueued += 1
        if enqueued:
            LOGGER.info("scheduled channel syncs enqueued count=%s", enqueued)
        return enqueued

    def process_due_jobs(self, *, limit: int) -> JobProcessingStats:
        claimed = self._jobs_repository.claim_due_jobs(limit=max(1, limit))
        succeeded = 0
        retried = 0
        failed = 0
        for job in claimed:
            context_tokens = bind_contextvars(job_id=job.job_id, job_type=job.job_type)
            try:
                result = self.run_job(job)
            except ValidationError as exc:
                LOGGER.warning("job payload rejected job_id=%s", job.job_id)
                self._jobs_repository.mark_job_failed(
                    job_id=job.job_id,
                    last_error=f"invalid_payload: {exc.error_count()} errors",
                )
                failed += 1
            except SyncTerminalError as exc:
                LOGGER.warning(
                    "job failed terminally job_id=%s error=%s",
                    job.job_id,
                    type(exc).__name__,
                )
                self._jobs_repository.mark_job_failed(
                    job_id=job.job_id,
                    last_error=f"{type(exc).__name__}: {exc}",
                )
                failed += 1
            except TransientSyncError as exc:
                if self._retry_or_fail(job, exc, retry_after_seconds=exc.retry_after_seconds):
                    retried += 1
                else:
                    failed += 1
            except Exception as exc:
                LOGGER.warning("job raised unexpectedly job_id=%s", job.job_id, exc_info=True)
                if self._retry_or_fail(
                    job,
                    exc,
                    retry_after_seconds=UNEXPECTED_ERROR_RETRY_SECONDS,
                ):
                    retried += 1
                else:
                    failed += 1
            else:
                self._jobs_repository.mark_job_succeeded(job.job_id, result=result)
                succeeded += 1
            finally:
                reset_contextvars(**context_tokens)

        stats = JobProcessingStats(
            attempted=len(claimed),
            succeeded=succeeded,
            retried=retried,
            failed=failed,
        )
        if claimed:
            self._telemetry.emit(
                "jobs.processed",
                attempted=stats.attempted,
                succeeded=stats.succeeded,
                retried=stats.retried,
                failed=stats.failed,
            )
        return stats

    def run_job(self, job: SyncJob) -> dict[str, Any]:
        if job.job_type == JOB_TYPE_CHANNEL_SYNC:
            sync_trigger = ChannelSyncTrigger.model_validate(job.payload)
            reconcile_result = self._catalog_reconciler.sync_channel(
                channel_id=sync_trigger.channel_id,
                user_id=sync_trigger.user_id,
            )
            return reconcile_result.to_dict()

        if job.job_type == JOB_TYPE_VIDEOS_UPDATE:
            update_trigger = VideosUpdateTrigger.model_validate(job.payload)
            dispatch_result = self._update_dispatcher.dispatch(
                video_ids=update_trigger.video_ids,
                user_id=update_trigger.user_id,
            )
            output = dispatch_result.to_dict()
            retry_ids = dispatch_result.retryable_video_ids
            next_round = update_trigger.retry_round + 1
            if retry_ids and next_round < self._max_attempts:
                output["follow_up_job_ids"] = self.enqueue_video_update(
                    video_ids=retry_ids,
                    user_id=update_trigger.user_id,
                    run_at=datetime.now(UTC) + timedelta(seconds=self._backoff_seconds(next_round)),
                    retry_round=next_round,
                )
            return output

        raise SyncTerminalError(f"unknown job type: {job.job_type}")

    def _retry_or_fail(self, job: SyncJob, exc: Exception, *, retry_after_seconds: int) -> bool:
        if job.attempts >= self._max_attempts:
            LOGGER.warning(
                "job retries exhausted job_id=%s attempts=%s",
                job.job_id,
                job.attempts,
            )
            self._jobs_repository.mark_job_failed(
                job_id=job.job_id,
                last_error=f"retry_exhausted: {exc}",
            )
            return False

        delay = min(
            self._retry_max_seconds,
            max(retry_after_seconds, self._backoff_seconds(job.attempts)),
        )
        self._jobs_repository.mark_job_retry(
            job_id=job.job_id,
            retry_after_seconds=delay,
            last_error=str(exc),
        )
        return True

    def _backoff_seconds(self, attempt: int) -> int:
        return min(self._retry_max_seconds, self._retry_base_seconds * (2 ** max(0, attempt - 1)))
