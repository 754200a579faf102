from __future__ import annotations


class SyncError(Exception):
    pass


class TransientSyncError(SyncError):
    def __init__(self, message: str, *, retry_after_seconds: int = 60) -> None:
        super().__init__(message)
        self.retry_after_seconds = max(1, retry_after_seconds)


class SyncTerminalError(SyncError):
    pass


class CredentialInvalidError(SyncTerminalError):
    def __init__(
        self,
        message: str,
        *,
        channel_id: str,
        remote_channel_id: str | None = None,
        channel_title: str | None = None,
    ) -> None:
        super().__init__(message)
        self.channel_id = channel_id
        self.remote_channel_id = remote_channel_id
        self.channel_title = channel_title


class NotFoundError(SyncTerminalError):
    pass


class ChannelNotFoundError(NotFoundError):
    pass


class RemoteVideoNotFoundError(NotFoundError):
    pass


class RemoteResourceNotFoundError(NotFoundError):
    pass


class CompositionValidationError(SyncTerminalError, ValueError):
    pass


class YouTubeApiError(SyncError):
    def __init__(
        self,
        message: str,
        *,
        status: int | None,
        retryable: bool,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable
        self.reason = reason


class ChannelConnectError(SyncError):
    pass
