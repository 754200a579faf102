from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from tubedesc.repositories.channel_repository import (
    TOKEN_STATUS_INVALID,
    ChannelRecord,
    ChannelRepository,
)
from tubedesc.services.errors import (
    ChannelNotFoundError,
    CredentialInvalidError,
    TransientSyncError,
)
from tubedesc.services.token_cipher import TokenCipher, TokenCipherError
from tubedesc.services.youtube_client import TokenRefresher
from tubedesc.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubedesc.credentials")

DEFAULT_REFRESH_BUFFER_SECONDS = 300
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
REFRESH_RETRY_AFTER_SECONDS = 60

PERMANENT_REFRESH_SIGNATURES: tuple[str, ...] = (
    "invalid_grant",
    "expired or revoked",
    "has been revoked",
    "token_revoked",
)


def is_permanent_refresh_failure(exc: BaseException) -> bool:
    """
    True when the provider rejected the refresh token itself.

    Such a channel cannot recover without the user reconnecting it. Everything
    else, including provider errors flagged retryable, is treated as a blip.
    """
    if getattr(exc, "retryable", False) is True:
        return False

    provider_error = _provider_error_code(exc)
    if provider_error is not None and provider_error.lower() in PERMANENT_REFRESH_SIGNATURES:
        return True

    normalized = str(exc).lower()
    return any(signature in normalized for signature in PERMANENT_REFRESH_SIGNATURES)


class CredentialManager:
    def __init__(
        self,
        *,
        channel_repository: ChannelRepository,
        cipher: TokenCipher,
        refresher: TokenRefresher,
        refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._channel_repository = channel_repository
        self._cipher = cipher
        self._refresher = refresher
        self._refresh_buffer = timedelta(seconds=max(0, refresh_buffer_seconds))
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock or (lambda: datetime.now(UTC))

    def access_token_for_channel(self, channel_id: str) -> str:
        channel = self._channel_repository.get_channel(channel_id)
        if channel is None:
            raise ChannelNotFoundError(f"channel not found: {channel_id}")
        return self.get_valid_access_token(channel)

    def get_valid_access_token(self, channel: ChannelRecord) -> str:
        if channel.token_status == TOKEN_STATUS_INVALID:
            raise _invalid_error(channel, "channel credentials are invalid; reconnect required")

        if not channel.access_token_encrypted or not channel.refresh_token_encrypted:
            self._invalidate(channel, reason="tokens_missing")
            raise _invalid_error(channel, "channel has no stored tokens; reconnect required")

        now = self._clock()
        expires_at = channel.token_expires_at
        if expires_at is not None and expires_at - now > self._refresh_buffer:
            return self._decrypt(channel, channel.access_token_encrypted)

        refresh_token = self._decrypt(channel, channel.refresh_token_encrypted)
        try:
            refreshed = self._refresher.refresh(refresh_token)
        except Exception as exc:
            if is_permanent_refresh_failure(exc):
                LOGGER.warning(
                    "channel token refresh rejected channel_id=%s remote_channel_id=%s",
                    channel.id,
                    channel.channel_id,
                )
                self._invalidate(channel, reason="refresh_rejected")
                raise _invalid_error(
                    channel,
                    f"refresh token rejected by provider; reconnect required: {exc}",
                ) from exc
            LOGGER.warning(
                "channel token refresh failed channel_id=%s; will retry",
                channel.id,
                exc_info=True,
            )
            self._telemetry.emit(
                "channel.credentials.refresh_failed",
                channel_id=channel.id,
                error_type=type(exc).__name__,
            )
            raise TransientSyncError(
                f"token refresh failed for channel {channel.channel_id}: {exc}",
                retry_after_seconds=REFRESH_RETRY_AFTER_SECONDS,
            ) from exc

        lifetime = (
            refreshed.expires_in_seconds
            if refreshed.expires_in_seconds is not None
            else DEFAULT_TOKEN_LIFETIME_SECONDS
        )
        new_expiry = now + timedelta(seconds=lifetime)
        self._channel_repository.update_access_token(
            channel.id,
            access_token_encrypted=self._cipher.encrypt(refreshed.access_token),
            token_expires_at=new_expiry,
            refresh_token_encrypted=(
                self._cipher.encrypt(refreshed.refresh_token)
                if refreshed.refresh_token
                else None
            ),
        )
        self._telemetry.emit(
            "channel.credentials.refreshed",
            channel_id=channel.id,
            expires_in_seconds=lifetime,
        )
        return refreshed.access_token

    def _decrypt(self, channel: ChannelRecord, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext)
        except TokenCipherError as exc:
            LOGGER.error("channel token decrypt failed channel_id=%s", channel.id)
            self._invalidate(channel, reason="decrypt_failed")
            raise _invalid_error(channel, "stored credentials are unreadable; reconnect required") from exc

    def _invalidate(self, channel: ChannelRecord, *, reason: str) -> None:
        self._channel_repository.mark_token_invalid(channel.id)
        self._telemetry.emit(
            "channel.credentials.invalidated",
            channel_id=channel.id,
            reason=reason,
        )


def _invalid_error(channel: ChannelRecord, message: str) -> CredentialInvalidError:
    title = channel.title or "Unknown"
    return CredentialInvalidError(
        f"{message} (channel {channel.channel_id}, {title})",
        channel_id=channel.id,
        remote_channel_id=channel.channel_id,
        channel_title=channel.title,
    )


def _provider_error_code(exc: BaseException) -> str | None:
    # google-auth passes the decoded token endpoint response as a later arg.
    for arg in exc.args:
        if isinstance(arg, dict):
            error = arg.get("error")
            if isinstance(error, str):
                return error
    error_attr = getattr(exc, "error", None)
    return error_attr if isinstance(error_attr, str) else None
