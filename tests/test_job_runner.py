from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from tubedesc.dependencies import ServiceContainer
from tubedesc.repositories.jobs_repository import (
    JOB_STATUS_FAILED,
    JOB_STATUS_QUEUED,
    JOB_STATUS_SUCCEEDED,
)
from tubedesc.services.errors import YouTubeApiError
from tubedesc.services.job_runner import (
    JOB_TYPE_CHANNEL_SYNC,
    JOB_TYPE_VIDEOS_UPDATE,
    MAX_VIDEO_IDS_PER_JOB,
    JobRunner,
)
from tubedesc.services.youtube_client import RemoteVideo


def _remote(video_id: str) -> RemoteVideo:
    return RemoteVideo(
        video_id=video_id,
        title=f"Video {video_id}",
        description="uploaded",
        published_at="2026-02-06T18:00:00Z",
    )


def _make_due(services: ServiceContainer, job_id: str) -> None:
    with services.database.connection() as conn:
        conn.execute(
            "UPDATE sync_jobs SET next_run_at = ? WHERE id = ?",
            (datetime.now(UTC).isoformat(), job_id),
        )


def test_channel_sync_job_succeeds_with_result(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    fake_youtube.set_uploads("UC_test", [_remote("v1"), _remote("v2")])
    job_id = services.job_runner.enqueue_channel_sync(channel_id=channel.id, user_id="user-1")

    stats = services.job_runner.process_due_jobs(limit=5)

    assert (stats.attempted, stats.succeeded, stats.retried, stats.failed) == (1, 1, 0, 0)
    job = services.jobs_repository.get_job(job_id)
    assert job is not None
    assert job.status == JOB_STATUS_SUCCEEDED
    assert job.result is not None
    assert job.result["inserted"] == 2
    assert job.result["status"] == "completed"


def test_transient_failure_is_retried_then_exhausted(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    fake_youtube.list_error = YouTubeApiError(
        "playlistItems.list failed status=500 reason=backendError",
        status=500,
        retryable=True,
        reason="backendError",
    )
    job_id = services.job_runner.enqueue_channel_sync(channel_id=channel.id, user_id="user-1")

    first = services.job_runner.process_due_jobs(limit=5)
    assert first.retried == 1
    job = services.jobs_repository.get_job(job_id)
    assert job is not None
    assert job.status == JOB_STATUS_QUEUED
    assert job.next_run_at > datetime.now(UTC)
    assert job.last_error is not None

    for _ in range(services.settings.job_max_attempts - 1):
        _make_due(services, job_id)
        services.job_runner.process_due_jobs(limit=5)

    exhausted = services.jobs_repository.get_job(job_id)
    assert exhausted is not None
    assert exhausted.status == JOB_STATUS_FAILED
    assert exhausted.attempts == services.settings.job_max_attempts
    assert exhausted.last_error is not None
    assert exhausted.last_error.startswith("retry_exhausted")


def test_terminal_failure_is_not_retried(
    services: ServiceContainer,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    services.channel_repository.mark_token_invalid(channel.id)
    job_id = services.job_runner.enqueue_channel_sync(channel_id=channel.id, user_id="user-1")

    stats = services.job_runner.process_due_jobs(limit=5)

    assert stats.failed == 1
    job = services.jobs_repository.get_job(job_id)
    assert job is not None
    assert job.status == JOB_STATUS_FAILED
    assert job.last_error is not None
    assert job.last_error.startswith("CredentialInvalidError")


def test_malformed_payload_fails_the_job(services: ServiceContainer) -> None:
    job_id = services.jobs_repository.enqueue_job(
        job_type=JOB_TYPE_CHANNEL_SYNC,
        payload={"channel": "missing-fields"},
    )

    stats = services.job_runner.process_due_jobs(limit=5)

    assert stats.failed == 1
    job = services.jobs_repository.get_job(job_id)
    assert job is not None
    assert job.status == JOB_STATUS_FAILED
    assert job.last_error is not None
    assert job.last_error.startswith("invalid_payload")


def test_unknown_job_type_fails(services: ServiceContainer) -> None:
    job_id = services.jobs_repository.enqueue_job(job_type="mystery", payload={})

    services.job_runner.process_due_jobs(limit=5)

    job = services.jobs_repository.get_job(job_id)
    assert job is not None
    assert job.status == JOB_STATUS_FAILED


def test_update_job_queues_follow_up_for_retryable_videos(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    fake_youtube.set_uploads("UC_test", [_remote("v1"), _remote("v2")])
    services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")
    template = services.composition_repository.create_template(
        user_id="user-1",
        name="Only",
        content="Watch {{video_id}}",
    )
    container = services.composition_repository.create_container(
        user_id="user-1",
        name="Only",
        template_order=[template.id],
    )
    state = services.video_repository.list_catalog_state(channel.id)
    with services.database.connection() as conn:
        rows = conn.execute("SELECT id, video_id FROM videos").fetchall()
    video_pks = {str(row["video_id"]): str(row["id"]) for row in rows}
    assert sorted(state) == sorted(video_pks)
    for video_pk in video_pks.values():
        services.video_repository.assign_container(video_pk, container.id)
    fake_youtube.update_failures = {
        "v2": YouTubeApiError(
            "videos.update failed status=503",
            status=503,
            retryable=True,
        )
    }
    job_ids = services.job_runner.enqueue_video_update(
        video_ids=list(video_pks.values()),
        user_id="user-1",
    )
    assert len(job_ids) == 1
    job_id = job_ids[0]

    services.job_runner.process_due_jobs(limit=5)

    job = services.jobs_repository.get_job(job_id)
    assert job is not None
    assert job.status == JOB_STATUS_SUCCEEDED
    assert job.result is not None
    assert job.result["updated"] == 1
    assert job.result["failed"] == 1
    follow_up_ids = job.result["follow_up_job_ids"]
    assert len(follow_up_ids) == 1
    follow_up = services.jobs_repository.get_job(follow_up_ids[0])
    assert follow_up is not None
    assert follow_up.job_type == JOB_TYPE_VIDEOS_UPDATE
    assert follow_up.status == JOB_STATUS_QUEUED
    assert follow_up.payload["video_ids"] == [video_pks["v2"]]
    assert follow_up.payload["retry_round"] == 1
    assert follow_up.next_run_at > datetime.now(UTC)


def test_enqueue_video_update_ignores_empty_selection(services: ServiceContainer) -> None:
    assert services.job_runner.enqueue_video_update(video_ids=[], user_id="user-1") == []


def test_enqueue_video_update_splits_large_selections(services: ServiceContainer) -> None:
    runner = JobRunner(
        jobs_repository=services.jobs_repository,
        channel_repository=services.channel_repository,
        catalog_reconciler=services.catalog_reconciler,
        update_dispatcher=services.update_dispatcher,
        videos_per_job=2,
    )

    job_ids = runner.enqueue_video_update(
        video_ids=["vid_a", "vid_b", "vid_a", "vid_c", "vid_d", "vid_e"],
        user_id="user-1",
    )

    assert len(job_ids) == 3
    payloads = []
    for job_id in job_ids:
        job = services.jobs_repository.get_job(job_id)
        assert job is not None
        assert job.job_type == JOB_TYPE_VIDEOS_UPDATE
        assert job.payload["user_id"] == "user-1"
        payloads.append(job.payload["video_ids"])
    assert payloads == [["vid_a", "vid_b"], ["vid_c", "vid_d"], ["vid_e"]]


def test_large_selection_stays_within_trigger_limit(services: ServiceContainer) -> None:
    video_ids = [f"vid_{index:05d}" for index in range(MAX_VIDEO_IDS_PER_JOB + 5)]

    job_ids = services.job_runner.enqueue_video_update(video_ids=video_ids, user_id="user-1")

    assert len(job_ids) > 1
    queued: list[str] = []
    for job_id in job_ids:
        job = services.jobs_repository.get_job(job_id)
        assert job is not None
        assert len(job.payload["video_ids"]) <= MAX_VIDEO_IDS_PER_JOB
        queued.extend(job.payload["video_ids"])
    assert queued == video_ids


def test_scheduled_syncs_skip_invalid_and_already_queued_channels(
    services: ServiceContainer,
    connect_channel: Callable[..., Any],
) -> None:
    healthy = connect_channel(remote_channel_id="UC_one")
    queued = connect_channel(remote_channel_id="UC_two")
    broken = connect_channel(remote_channel_id="UC_three")
    services.channel_repository.mark_token_invalid(broken.id)
    services.job_runner.enqueue_channel_sync(channel_id=queued.id, user_id="user-1")

    assert services.job_runner.enqueue_scheduled_syncs() == 1
    assert services.jobs_repository.has_open_job(
        job_type=JOB_TYPE_CHANNEL_SYNC,
        payload_key="channel_id",
        payload_value=healthy.id,
    )
    assert services.job_runner.enqueue_scheduled_syncs() == 0
