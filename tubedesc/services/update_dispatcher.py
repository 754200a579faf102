from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from typing import Any

from tubedesc.repositories.channel_repository import ChannelRecord, ChannelRepository
from tubedesc.repositories.composition_repository import (
    CompositionRepository,
    ContainerRecord,
    TemplateRecord,
    VideoVariableRecord,
)
from tubedesc.repositories.video_repository import VideoRecord, VideoRepository
from tubedesc.services.credential_manager import CredentialManager
from tubedesc.services.errors import SyncError, TransientSyncError, YouTubeApiError
from tubedesc.services.template_engine import build_description, exceeds_description_limit
from tubedesc.services.youtube_client import YouTubeDataClient
from tubedesc.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubedesc.updates")

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_CONCURRENCY = 5


@dataclass(frozen=True)
class ComposedDescription:
    video: VideoRecord
    container: ContainerRecord
    templates: list[TemplateRecord]
    description: str

    @property
    def changed(self) -> bool:
        return self.description != self.video.current_description


@dataclass(frozen=True)
class VideoUpdateFailure:
    video_id: str
    remote_video_id: str
    error_type: str
    message: str
    retryable: bool


@dataclass(frozen=True)
class DispatchResult:
    processed: int
    updated: int
    failed: int
    skipped: int
    not_found: int
    failures: list[VideoUpdateFailure] = field(default_factory=list)

    @property
    def retryable_video_ids(self) -> list[str]:
        return [failure.video_id for failure in self.failures if failure.retryable]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class UpdateDispatcher:
    def __init__(
        self,
        *,
        video_repository: VideoRepository,
        composition_repository: CompositionRepository,
        channel_repository: ChannelRepository,
        credential_manager: CredentialManager,
        youtube_client: YouTubeDataClient,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._video_repository = video_repository
        self._composition_repository = composition_repository
        self._channel_repository = channel_repository
        self._credential_manager = credential_manager
        self._youtube_client = youtube_client
        self._batch_size = max(1, batch_size)
        self._max_concurrency = max(1, max_concurrency)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def compose_videos(self, videos: Sequence[VideoRecord]) -> dict[str, ComposedDescription]:
        """
        Compose descriptions for the given videos from their current container state.

        Videos without a container, or whose container resolves to no existing
        templates, are absent from the result.
        """
        containers = self._composition_repository.get_containers(
            video.container_id for video in videos if video.container_id is not None
        )
        templates = self._composition_repository.get_templates(
            template_id
            for container in containers.values()
            for template_id in container.template_order
        )
        bindings = self._composition_repository.list_video_variables(video.id for video in videos)

        composed: dict[str, ComposedDescription] = {}
        for video in videos:
            if video.container_id is None:
                continue
            container = containers.get(video.container_id)
            if container is None:
                continue
            ordered = [
                templates[template_id]
                for template_id in container.template_order
                if template_id in templates
            ]
            if not ordered:
                continue
            video_wide, scoped = _split_bindings(bindings.get(video.id, []))
            description = build_description(
                ordered,
                video_wide,
                container.separator,
                video.video_id,
                template_variables=scoped,
            )
            composed[video.id] = ComposedDescription(
                video=video,
                container=container,
                templates=ordered,
                description=description,
            )
        return composed

    def dispatch(self, *, video_ids: Sequence[str], user_id: str) -> DispatchResult:
        requested = list(dict.fromkeys(video_ids))
        started_at = time.perf_counter()
        self._telemetry.emit("videos.update.start", requested=len(requested))

        loaded = self._video_repository.get_videos(requested)
        channels = self._load_channels(loaded.values())
        owned: list[VideoRecord] = []
        for video_id in requested:
            video = loaded.get(video_id)
            if video is None:
                continue
            channel = channels.get(video.channel_id)
            if channel is None or channel.user_id != user_id:
                continue
            owned.append(video)
        not_found = len(requested) - len(owned)

        composed = self.compose_videos(owned)
        pending: list[ComposedDescription] = []
        for video in owned:
            item = composed.get(video.id)
            if item is None or not item.changed:
                continue
            if exceeds_description_limit(item.description):
                LOGGER.warning(
                    "composed description exceeds platform limit video_id=%s length=%s",
                    video.id,
                    len(item.description),
                )
            pending.append(item)
        skipped = len(owned) - len(pending)

        updated = 0
        failures: list[VideoUpdateFailure] = []
        tokens: dict[str, str] = {}
        channel_errors: dict[str, SyncError] = {}
        with ThreadPoolExecutor(
            max_workers=self._max_concurrency,
            thread_name_prefix="tubedesc-update",
        ) as pool:
            for batch in _batches(pending, self._batch_size):
                futures: dict[Future[None], ComposedDescription] = {}
                for item in batch:
                    channel = channels[item.video.channel_id]
                    token = self._token_for(channel, tokens, channel_errors)
                    if token is None:
                        failures.append(_failure(item, channel_errors[channel.id]))
                        continue
                    future = pool.submit(
                        self._youtube_client.update_video_description,
                        token,
                        item.video.video_id,
                        item.description,
                    )
                    futures[future] = item

                for future in as_completed(futures):
                    item = futures[future]
                    try:
                        future.result()
                    except Exception as exc:
                        LOGGER.warning(
                            "video description update failed video_id=%s remote_video_id=%s error=%s",
                            item.video.id,
                            item.video.video_id,
                            type(exc).__name__,
                        )
                        failures.append(_failure(item, exc))
                        continue
                    try:
                        self._video_repository.record_description_update(
                            item.video.id,
                            description=item.description,
                            actor=user_id,
                        )
                    except sqlite3.Error as exc:
                        LOGGER.warning(
                            "recording pushed description failed video_id=%s remote_video_id=%s",
                            item.video.id,
                            item.video.video_id,
                            exc_info=True,
                        )
                        failures.append(_failure(item, exc))
                        continue
                    updated += 1

        result = DispatchResult(
            processed=len(requested),
            updated=updated,
            failed=len(failures),
            skipped=skipped,
            not_found=not_found,
            failures=failures,
        )
        self._telemetry.emit(
            "videos.update.finish",
            duration_ms=int((time.perf_counter() - started_at) * 1000),
            processed=result.processed,
            updated=result.updated,
            failed=result.failed,
            skipped=result.skipped,
            not_found=result.not_found,
        )
        return result

    def _load_channels(self, videos: Iterable[VideoRecord]) -> dict[str, ChannelRecord]:
        channels: dict[str, ChannelRecord] = {}
        for video in videos:
            if video.channel_id in channels:
                continue
            channel = self._channel_repository.get_channel(video.channel_id)
            if channel is not None:
                channels[channel.id] = channel
        return channels

    def _token_for(
        self,
        channel: ChannelRecord,
        tokens: dict[str, str],
        channel_errors: dict[str, SyncError],
    ) -> str | None:
        if channel.id in tokens:
            return tokens[channel.id]
        if channel.id in channel_errors:
            return None
        try:
            token = self._credential_manager.get_valid_access_token(channel)
        except SyncError as exc:
            LOGGER.warning(
                "skipping channel videos; no usable token channel_id=%s error=%s",
                channel.id,
                type(exc).__name__,
            )
            channel_errors[channel.id] = exc
            return None
        tokens[channel.id] = token
        return token


def _split_bindings(
    records: list[VideoVariableRecord],
) -> tuple[dict[str, str], dict[str, dict[str, str]]]:
    video_wide: dict[str, str] = {}
    scoped: dict[str, dict[str, str]] = {}
    for record in records:
        video_wide[record.variable_name] = record.variable_value
        scoped.setdefault(record.template_id, {})[record.variable_name] = record.variable_value
    return video_wide, scoped


def _batches(items: list[ComposedDescription], size: int) -> Iterator[list[ComposedDescription]]:
    for index in range(0, len(items), size):
        yield items[index : index + size]


def _failure(item: ComposedDescription, exc: BaseException) -> VideoUpdateFailure:
    retryable = (
        isinstance(exc, (TransientSyncError, sqlite3.OperationalError))
        or (isinstance(exc, YouTubeApiError) and exc.retryable)
    )
    return VideoUpdateFailure(
        video_id=item.video.id,
        remote_video_id=item.video.video_id,
        error_type=type(exc).__name__,
        message=str(exc),
        retryable=retryable,
    )
