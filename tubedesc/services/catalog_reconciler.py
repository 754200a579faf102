from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from tubedesc.repositories.channel_repository import ChannelRecord, ChannelRepository
from tubedesc.repositories.common import parse_iso_datetime, to_utc_iso
from tubedesc.repositories.video_repository import (
    CatalogEntry,
    LocalCatalogState,
    VideoRepository,
)
from tubedesc.services.credential_manager import CredentialManager
from tubedesc.services.errors import ChannelNotFoundError, TransientSyncError, YouTubeApiError
from tubedesc.services.youtube_client import RemoteVideo, YouTubeDataClient, to_sync_error
from tubedesc.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubedesc.catalog")

DEFAULT_SYNC_LEASE_SECONDS = 1800
SYNC_STATUS_COMPLETED = "completed"
SYNC_STATUS_SKIPPED = "skipped"


@dataclass(frozen=True)
class CatalogDiff:
    inserts: list[CatalogEntry]
    updates: list[CatalogEntry]
    deletes: list[str]

    @property
    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deletes)


@dataclass(frozen=True)
class ReconcileResult:
    channel_id: str
    status: str
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    deleted: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def plan_catalog_diff(
    remote_videos: Iterable[RemoteVideo],
    local_state: Mapping[str, LocalCatalogState],
) -> CatalogDiff:
    """
    Diff the remote catalog against local rows by id-set membership.

    Output lists are sorted by remote video id, so the plan does not depend
    on the order the provider returned pages in. Rows present on both sides
    only produce an update when the title or publish time actually changed.
    """
    remote_by_id: dict[str, RemoteVideo] = {}
    for video in remote_videos:
        remote_by_id.setdefault(video.video_id, video)

    inserts: list[CatalogEntry] = []
    updates: list[CatalogEntry] = []
    for video_id in sorted(remote_by_id):
        video = remote_by_id[video_id]
        entry = CatalogEntry(
            video_id=video_id,
            title=video.title,
            description=video.description,
            published_at=_normalize_timestamp(video.published_at),
        )
        local = local_state.get(video_id)
        if local is None:
            inserts.append(entry)
            continue
        if local.title != entry.title or _normalize_timestamp(local.published_at) != entry.published_at:
            updates.append(entry)

    deletes = sorted(video_id for video_id in local_state if video_id not in remote_by_id)
    return CatalogDiff(inserts=inserts, updates=updates, deletes=deletes)


class CatalogReconciler:
    def __init__(
        self,
        *,
        channel_repository: ChannelRepository,
        video_repository: VideoRepository,
        credential_manager: CredentialManager,
        youtube_client: YouTubeDataClient,
        lease_seconds: int = DEFAULT_SYNC_LEASE_SECONDS,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._channel_repository = channel_repository
        self._video_repository = video_repository
        self._credential_manager = credential_manager
        self._youtube_client = youtube_client
        self._lease = timedelta(seconds=max(60, lease_seconds))
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock or (lambda: datetime.now(UTC))

    def sync_channel(self, *, channel_id: str, user_id: str) -> ReconcileResult:
        channel = self._channel_repository.get_channel(channel_id, user_id=user_id)
        if channel is None:
            raise ChannelNotFoundError(f"channel not found: {channel_id}")

        owner = f"sync_{uuid4().hex}"
        acquired = self._channel_repository.try_begin_sync(
            channel.id,
            owner=owner,
            lease_expires_at=self._clock() + self._lease,
        )
        if not acquired:
            LOGGER.info("channel sync skipped; another run holds the lease channel_id=%s", channel.id)
            self._telemetry.emit("channel.sync.skipped", channel_id=channel.id)
            return ReconcileResult(channel_id=channel.id, status=SYNC_STATUS_SKIPPED)

        context_tokens = bind_contextvars(sync_channel_id=channel.id, sync_owner=owner)
        started_at = time.perf_counter()
        completed_at: datetime | None = None
        self._telemetry.emit("channel.sync.start", channel_id=channel.id)
        try:
            result = self._reconcile(channel, user_id=user_id)
            completed_at = self._clock()
        except Exception as exc:
            self._telemetry.emit(
                "channel.sync.error",
                channel_id=channel.id,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        finally:
            self._channel_repository.finish_sync(channel.id, owner=owner, synced_at=completed_at)
            reset_contextvars(**context_tokens)

        self._telemetry.emit(
            "channel.sync.finish",
            channel_id=channel.id,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
            fetched=result.fetched,
            inserted=result.inserted,
            updated=result.updated,
            deleted=result.deleted,
        )
        LOGGER.info(
            "channel sync finished channel_id=%s fetched=%s inserted=%s updated=%s deleted=%s",
            channel.id,
            result.fetched,
            result.inserted,
            result.updated,
            result.deleted,
        )
        return result

    def _reconcile(self, channel: ChannelRecord, *, user_id: str) -> ReconcileResult:
        access_token = self._credential_manager.get_valid_access_token(channel)
        self._refresh_metadata(channel, access_token)

        try:
            playlist_id = self._youtube_client.get_uploads_playlist_id(
                access_token,
                channel.channel_id,
            )
            remote_videos = self._fetch_catalog(access_token, playlist_id)
        except YouTubeApiError as exc:
            raise to_sync_error(exc) from exc

        diff = plan_catalog_diff(
            remote_videos,
            self._video_repository.list_catalog_state(channel.id),
        )
        counts = self._video_repository.apply_catalog_changes(
            channel.id,
            inserts=diff.inserts,
            updates=diff.updates,
            deletes=diff.deletes,
            actor=user_id,
        )
        return ReconcileResult(
            channel_id=channel.id,
            status=SYNC_STATUS_COMPLETED,
            fetched=len(remote_videos),
            inserted=counts.inserted,
            updated=counts.updated,
            deleted=counts.deleted,
        )

    def _refresh_metadata(self, channel: ChannelRecord, access_token: str) -> None:
        try:
            remote = self._youtube_client.fetch_channel(access_token, channel.channel_id)
        except Exception:
            LOGGER.warning(
                "channel metadata refresh failed channel_id=%s",
                channel.id,
                exc_info=True,
            )
            return
        self._channel_repository.update_metadata(
            channel.id,
            title=remote.title,
            thumbnail_url=remote.thumbnail_url,
            subscriber_count=remote.subscriber_count,
        )

    def _fetch_catalog(self, access_token: str, playlist_id: str) -> list[RemoteVideo]:
        videos: list[RemoteVideo] = []
        seen_tokens: set[str] = set()
        page_token: str | None = None
        while True:
            page = self._youtube_client.list_upload_page(
                access_token,
                playlist_id,
                page_token=page_token,
            )
            videos.extend(page.videos)
            if page.next_page_token is None:
                break
            if page.next_page_token in seen_tokens:
                LOGGER.warning(
                    "uploads pagination repeated a page token playlist_id=%s token=%s",
                    playlist_id,
                    page.next_page_token,
                )
                raise TransientSyncError(
                    f"uploads pagination for {playlist_id} repeated page token "
                    f"{page.next_page_token!r}; catalog incomplete"
                )
            seen_tokens.add(page.next_page_token)
            page_token = page.next_page_token
        return videos


def _normalize_timestamp(value: str | None) -> str | None:
    parsed = parse_iso_datetime(value)
    if parsed is None:
        return value
    return to_utc_iso(parsed)
