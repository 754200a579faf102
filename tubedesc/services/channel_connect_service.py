from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from tubedesc.repositories.channel_repository import ChannelRecord, ChannelRepository
from tubedesc.services.errors import ChannelConnectError, SyncError
from tubedesc.services.job_runner import JobRunner
from tubedesc.services.token_cipher import TokenCipher
from tubedesc.services.youtube_client import OAuthFlowHelper, YouTubeDataClient
from tubedesc.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubedesc.channels")

DEFAULT_ACCESS_TOKEN_LIFETIME_SECONDS = 3600


@dataclass(frozen=True)
class ConnectResult:
    channel: ChannelRecord
    sync_job_id: str


class ChannelConnectService:
    """Connects a YouTube channel from an OAuth code and queues its first sync."""

    def __init__(
        self,
        *,
        channel_repository: ChannelRepository,
        cipher: TokenCipher,
        oauth_flow: OAuthFlowHelper,
        youtube_client: YouTubeDataClient,
        job_runner: JobRunner,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._channel_repository = channel_repository
        self._cipher = cipher
        self._oauth_flow = oauth_flow
        self._youtube_client = youtube_client
        self._job_runner = job_runner
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def authorization_url(self, *, state: str | None = None) -> str:
        return self._oauth_flow.authorization_url(state=state)

    def connect(self, *, user_id: str, code: str) -> ConnectResult:
        try:
            exchanged = self._oauth_flow.exchange_code(code)
        except Exception as exc:
            LOGGER.warning("oauth code exchange failed user_id=%s", user_id, exc_info=True)
            raise ChannelConnectError(f"authorization code exchange failed: {exc}") from exc

        try:
            remote = self._youtube_client.fetch_own_channel(exchanged.access_token)
        except SyncError as exc:
            raise ChannelConnectError(f"could not read the authorized channel: {exc}") from exc

        existing = self._channel_repository.get_channel_by_remote_id(remote.channel_id)
        if existing is not None and existing.user_id != user_id:
            raise ChannelConnectError("channel is already connected to another account")

        expires_at = exchanged.expires_at or (
            datetime.now(UTC) + timedelta(seconds=DEFAULT_ACCESS_TOKEN_LIFETIME_SECONDS)
        )
        channel = self._channel_repository.upsert_connected_channel(
            user_id=user_id,
            remote_channel_id=remote.channel_id,
            title=remote.title,
            thumbnail_url=remote.thumbnail_url,
            subscriber_count=remote.subscriber_count or 0,
            access_token_encrypted=self._cipher.encrypt(exchanged.access_token),
            refresh_token_encrypted=self._cipher.encrypt(exchanged.refresh_token),
            token_expires_at=expires_at,
        )
        sync_job_id = self._job_runner.enqueue_channel_sync(channel_id=channel.id, user_id=user_id)
        self._telemetry.emit(
            "channel.connected",
            channel_id=channel.id,
            reconnected=existing is not None,
        )
        LOGGER.info(
            "channel connected channel_id=%s remote_channel_id=%s reconnected=%s",
            channel.id,
            channel.channel_id,
            existing is not None,
        )
        return ConnectResult(channel=channel, sync_job_id=sync_job_id)

    def disconnect(self, *, channel_id: str, user_id: str) -> bool:
        deleted = self._channel_repository.delete_channel(channel_id, user_id=user_id)
        if deleted:
            self._telemetry.emit("channel.disconnected", channel_id=channel_id)
        return deleted
