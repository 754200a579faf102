from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from tubedesc.dependencies import ServiceContainer
from tubedesc.repositories.channel_repository import SYNC_STATUS_IDLE
from tubedesc.repositories.video_repository import LocalCatalogState
from tubedesc.services.catalog_reconciler import plan_catalog_diff
from tubedesc.services.errors import (
    ChannelNotFoundError,
    CredentialInvalidError,
    TransientSyncError,
    YouTubeApiError,
)
from tubedesc.services.youtube_client import RemoteVideo, RemoteVideoPage


def _remote(video_id: str, *, title: str | None = None) -> RemoteVideo:
    return RemoteVideo(
        video_id=video_id,
        title=title or f"Video {video_id}",
        description=f"Original description of {video_id}",
        published_at="2026-02-06T18:00:00Z",
    )


def _video_pk(services: ServiceContainer, channel_id: str, remote_video_id: str) -> str:
    with services.database.connection() as conn:
        row = conn.execute(
            "SELECT id FROM videos WHERE channel_id = ? AND video_id = ?",
            (channel_id, remote_video_id),
        ).fetchone()
    assert row is not None
    return str(row["id"])


def test_sync_inserts_updates_and_deletes(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    fake_youtube.set_uploads("UC_test", [_remote("v2"), _remote("v3")])
    first = services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")
    assert (first.inserted, first.updated, first.deleted) == (2, 0, 0)

    fake_youtube.set_uploads("UC_test", [_remote("v1"), _remote("v2", title="Renamed v2")])
    result = services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")

    assert result.status == "completed"
    assert result.fetched == 2
    assert (result.inserted, result.updated, result.deleted) == (1, 1, 1)

    state = services.video_repository.list_catalog_state(channel.id)
    assert sorted(state) == ["v1", "v2"]
    assert state["v2"].title == "Renamed v2"

    v1_history = services.video_repository.list_history(_video_pk(services, channel.id, "v1"))
    assert [entry.version_number for entry in v1_history] == [1]
    assert v1_history[0].description == "Original description of v1"
    v2_history = services.video_repository.list_history(_video_pk(services, channel.id, "v2"))
    assert [entry.version_number for entry in v2_history] == [1]


def test_sync_rerun_without_remote_changes_is_a_no_op(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    fake_youtube.set_uploads("UC_test", [_remote("v1"), _remote("v2"), _remote("v3")])
    services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")

    rerun = services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")

    assert (rerun.inserted, rerun.updated, rerun.deleted) == (0, 0, 0)
    assert rerun.fetched == 3
    stored = services.channel_repository.get_channel(channel.id)
    assert stored is not None
    assert stored.sync_status == SYNC_STATUS_IDLE
    assert stored.last_synced_at is not None


def test_sync_walks_every_upload_page(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    fake_youtube.set_uploads("UC_test", [_remote(f"v{index}") for index in range(5)])

    result = services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")

    assert result.inserted == 5
    assert fake_youtube.page_requests == [None, "2", "4"]


def test_sync_aborts_when_pagination_repeats_a_page_token(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    channel = connect_channel()
    fake_youtube.set_uploads("UC_test", [_remote(f"v{index}") for index in range(6)])
    services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")
    history_pk = _video_pk(services, channel.id, "v5")

    original_list_page = fake_youtube.list_upload_page

    def _looping_list_page(access_token: str, playlist_id: str, *, page_token: str | None = None) -> Any:
        page = original_list_page(access_token, playlist_id, page_token=page_token)
        if page_token == "2":
            return RemoteVideoPage(videos=page.videos, next_page_token="2")
        return page

    monkeypatch.setattr(fake_youtube, "list_upload_page", _looping_list_page)

    with pytest.raises(TransientSyncError, match="catalog incomplete"):
        services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")

    state = services.video_repository.list_catalog_state(channel.id)
    assert sorted(state) == [f"v{index}" for index in range(6)]
    assert [entry.version_number for entry in services.video_repository.list_history(history_pk)] == [1]
    stored = services.channel_repository.get_channel(channel.id)
    assert stored is not None
    assert stored.sync_status == SYNC_STATUS_IDLE
    assert stored.sync_lease_owner is None


def test_sync_refreshes_channel_metadata(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    fake_youtube.add_channel("UC_test", title="Renamed Channel")

    services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")

    stored = services.channel_repository.get_channel(channel.id)
    assert stored is not None
    assert stored.title == "Renamed Channel"
    assert stored.subscriber_count == 1200


def test_sync_failure_releases_lease_without_stamping_sync_time(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    fake_youtube.list_error = YouTubeApiError(
        "channels.list failed status=503 reason=backendError",
        status=503,
        retryable=True,
        reason="backendError",
    )

    with pytest.raises(TransientSyncError):
        services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")

    stored = services.channel_repository.get_channel(channel.id)
    assert stored is not None
    assert stored.sync_status == SYNC_STATUS_IDLE
    assert stored.sync_lease_owner is None
    assert stored.last_synced_at is None


def test_sync_is_skipped_while_another_run_holds_the_lease(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    fake_youtube.set_uploads("UC_test", [_remote("v1")])
    assert services.channel_repository.try_begin_sync(
        channel.id,
        owner="other-worker",
        lease_expires_at=datetime.now(UTC) + timedelta(minutes=10),
    )

    result = services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")

    assert result.status == "skipped"
    assert services.video_repository.list_catalog_state(channel.id) == {}
    stored = services.channel_repository.get_channel(channel.id)
    assert stored is not None
    assert stored.sync_lease_owner == "other-worker"


def test_expired_lease_can_be_taken_over(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    fake_youtube.set_uploads("UC_test", [_remote("v1")])
    assert services.channel_repository.try_begin_sync(
        channel.id,
        owner="crashed-worker",
        lease_expires_at=datetime.now(UTC) - timedelta(minutes=1),
    )

    result = services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")

    assert result.status == "completed"
    assert result.inserted == 1


def test_sync_with_invalid_credentials_fails_and_releases_lease(
    services: ServiceContainer,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    services.channel_repository.mark_token_invalid(channel.id)

    with pytest.raises(CredentialInvalidError):
        services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-1")

    stored = services.channel_repository.get_channel(channel.id)
    assert stored is not None
    assert stored.sync_status == SYNC_STATUS_IDLE


def test_sync_rejects_channel_owned_by_someone_else(
    services: ServiceContainer,
    connect_channel: Callable[..., Any],
) -> None:
    channel = connect_channel()
    with pytest.raises(ChannelNotFoundError):
        services.catalog_reconciler.sync_channel(channel_id=channel.id, user_id="user-2")


def test_plan_catalog_diff_is_independent_of_remote_order() -> None:
    local = {
        "v2": LocalCatalogState(video_id="v2", title="Old", published_at="2026-02-06T18:00:00+00:00"),
        "v3": LocalCatalogState(video_id="v3", title="Video v3", published_at=None),
    }
    forward = plan_catalog_diff([_remote("v1"), _remote("v2"), _remote("v4")], local)
    backward = plan_catalog_diff([_remote("v4"), _remote("v2"), _remote("v1")], local)

    assert forward == backward
    assert [entry.video_id for entry in forward.inserts] == ["v1", "v4"]
    assert [entry.video_id for entry in forward.updates] == ["v2"]
    assert forward.deletes == ["v3"]


def test_plan_catalog_diff_ignores_equivalent_timestamps() -> None:
    local = {
        "v1": LocalCatalogState(
            video_id="v1",
            title="Video v1",
            published_at="2026-02-06T18:00:00+00:00",
        )
    }
    diff = plan_catalog_diff([_remote("v1")], local)
    assert diff.is_empty
