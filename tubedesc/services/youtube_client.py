from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar, cast

import httplib2
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import BaseModel, ValidationError

from tubedesc.models.youtube_contracts import (
    ChannelListResponse,
    PlaylistItemListResponse,
    VideoListResponse,
    VideoResource,
)
from tubedesc.services.errors import (
    RemoteResourceNotFoundError,
    RemoteVideoNotFoundError,
    SyncError,
    SyncTerminalError,
    TransientSyncError,
    YouTubeApiError,
)

LOGGER = logging.getLogger("tubedesc.youtube")

YOUTUBE_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/youtube.readonly",
    "https://www.googleapis.com/auth/youtube.force-ssl",
)
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_CATEGORY_ID = "22"
MAX_PAGE_SIZE = 50

_RETRYABLE_REASONS: frozenset[str] = frozenset(
    {"quotaExceeded", "rateLimitExceeded", "userRateLimitExceeded", "backendError"}
)

ClientFactory = Callable[[str], Any]
ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class RemoteChannel:
    channel_id: str
    title: str | None
    thumbnail_url: str | None
    subscriber_count: int | None
    uploads_playlist_id: str | None


@dataclass(frozen=True)
class RemoteVideo:
    video_id: str
    title: str
    description: str
    published_at: str | None


@dataclass(frozen=True)
class RemoteVideoPage:
    videos: list[RemoteVideo]
    next_page_token: str | None


@dataclass(frozen=True)
class RefreshedAccessToken:
    access_token: str
    expires_in_seconds: int | None
    refresh_token: str | None = None


@dataclass(frozen=True)
class ExchangedCredentials:
    access_token: str
    refresh_token: str
    expires_at: datetime | None


class TokenRefresher(Protocol):
    def refresh(self, refresh_token: str) -> RefreshedAccessToken: ...


def build_youtube_api_client(access_token: str) -> Any:
    credentials = Credentials(token=access_token)
    return build("youtube", "v3", credentials=credentials, cache_discovery=False)


class YouTubeDataClient:
    """Thin YouTube Data API v3 wrapper that validates every response at the boundary."""

    def __init__(
        self,
        *,
        client_factory: ClientFactory | None = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self._client_factory = client_factory or build_youtube_api_client
        self._page_size = max(1, min(MAX_PAGE_SIZE, page_size))

    def fetch_own_channel(self, access_token: str) -> RemoteChannel:
        client = self._client_factory(access_token)
        raw = _execute(
            client.channels().list(
                part="snippet,statistics,contentDetails",
                mine=True,
                maxResults=1,
            ),
            operation="channels.list",
        )
        response = _parse(ChannelListResponse, raw, operation="channels.list")
        if not response.items:
            raise RemoteResourceNotFoundError("no YouTube channel for the authorized account")
        return _remote_channel(response)

    def fetch_channel(self, access_token: str, remote_channel_id: str) -> RemoteChannel:
        client = self._client_factory(access_token)
        raw = _execute(
            client.channels().list(
                part="snippet,statistics,contentDetails",
                id=remote_channel_id,
                maxResults=1,
            ),
            operation="channels.list",
        )
        response = _parse(ChannelListResponse, raw, operation="channels.list")
        if not response.items:
            raise RemoteResourceNotFoundError(f"channel not found: {remote_channel_id}")
        return _remote_channel(response)

    def get_uploads_playlist_id(self, access_token: str, remote_channel_id: str) -> str:
        client = self._client_factory(access_token)
        raw = _execute(
            client.channels().list(part="contentDetails", id=remote_channel_id, maxResults=1),
            operation="channels.list",
        )
        response = _parse(ChannelListResponse, raw, operation="channels.list")
        if not response.items:
            raise RemoteResourceNotFoundError(f"channel not found: {remote_channel_id}")
        uploads = response.items[0].content_details.related_playlists.uploads
        if not uploads:
            raise RemoteResourceNotFoundError(
                f"uploads playlist missing for channel {remote_channel_id}"
            )
        return uploads

    def list_upload_page(
        self,
        access_token: str,
        playlist_id: str,
        *,
        page_token: str | None = None,
    ) -> RemoteVideoPage:
        client = self._client_factory(access_token)
        query_kwargs: dict[str, object] = {
            "part": "snippet,contentDetails",
            "playlistId": playlist_id,
            "maxResults": self._page_size,
        }
        if page_token is not None:
            query_kwargs["pageToken"] = page_token

        raw_page = _execute(
            client.playlistItems().list(**query_kwargs),
            operation="playlistItems.list",
        )
        page = _parse(PlaylistItemListResponse, raw_page, operation="playlistItems.list")
        video_ids = [item.video_id for item in page.items if item.video_id]
        if not video_ids:
            return RemoteVideoPage(videos=[], next_page_token=page.next_page_token)

        # playlistItems may truncate descriptions; videos.list returns the full snippet.
        raw_details = _execute(
            client.videos().list(part="snippet", id=",".join(video_ids), maxResults=len(video_ids)),
            operation="videos.list",
        )
        details = _parse(VideoListResponse, raw_details, operation="videos.list")
        by_id: dict[str, VideoResource] = {item.id: item for item in details.items}

        videos: list[RemoteVideo] = []
        for item in page.items:
            video_id = item.video_id
            if not video_id:
                continue
            resource = by_id.get(video_id)
            if resource is not None:
                snippet = resource.snippet
                title = snippet.title or item.snippet.title or ""
                description = snippet.description or ""
                published_at = snippet.published_at or item.content_details.video_published_at
            else:
                title = item.snippet.title or ""
                description = item.snippet.description or ""
                published_at = item.content_details.video_published_at or item.snippet.published_at
            videos.append(
                RemoteVideo(
                    video_id=video_id,
                    title=title,
                    description=description,
                    published_at=published_at,
                )
            )
        return RemoteVideoPage(videos=videos, next_page_token=page.next_page_token)

    def update_video_description(self, access_token: str, video_id: str, description: str) -> None:
        """Replace the description while carrying the other writable snippet fields over."""
        client = self._client_factory(access_token)
        raw = _execute(
            client.videos().list(part="snippet", id=video_id, maxResults=1),
            operation="videos.list",
        )
        response = _parse(VideoListResponse, raw, operation="videos.list")
        if not response.items:
            raise RemoteVideoNotFoundError(f"video not found: {video_id}")

        current = response.items[0].snippet
        snippet: dict[str, Any] = {
            "title": current.title or "",
            "description": description,
            "categoryId": current.category_id or DEFAULT_CATEGORY_ID,
        }
        if current.tags is not None:
            snippet["tags"] = list(current.tags)
        if current.default_language is not None:
            snippet["defaultLanguage"] = current.default_language

        _execute(
            client.videos().update(part="snippet", body={"id": video_id, "snippet": snippet}),
            operation="videos.update",
        )


class GoogleTokenRefresher:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_uri: str = DEFAULT_TOKEN_URI,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_uri = token_uri

    def refresh(self, refresh_token: str) -> RefreshedAccessToken:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            client_id=self._client_id,
            client_secret=self._client_secret,
            token_uri=self._token_uri,
            scopes=list(YOUTUBE_SCOPES),
        )
        credentials.refresh(Request())

        expires_in: int | None = None
        if credentials.expiry is not None:
            # google-auth keeps expiry as a naive UTC datetime.
            expiry = credentials.expiry.replace(tzinfo=UTC)
            expires_in = max(0, int((expiry - datetime.now(UTC)).total_seconds()))

        rotated = credentials.refresh_token
        return RefreshedAccessToken(
            access_token=str(credentials.token),
            expires_in_seconds=expires_in,
            refresh_token=rotated if rotated and rotated != refresh_token else None,
        )


class OAuthFlowHelper:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        token_uri: str = DEFAULT_TOKEN_URI,
    ) -> None:
        self._client_config = {
            "web": {
                "client_id": client_id,
                "client_secret": client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": token_uri,
                "redirect_uris": [redirect_uri],
            }
        }
        self._redirect_uri = redirect_uri

    def authorization_url(self, *, state: str | None = None) -> str:
        flow = self._build_flow(state=state)
        url, _ = flow.authorization_url(
            access_type="offline",
            prompt="consent",
            include_granted_scopes="true",
        )
        return str(url)

    def exchange_code(self, code: str) -> ExchangedCredentials:
        flow = self._build_flow()
        flow.fetch_token(code=code)
        credentials = flow.credentials
        if not credentials.token:
            raise SyncTerminalError("authorization code exchange returned no access token")
        if not credentials.refresh_token:
            raise SyncTerminalError(
                "authorization code exchange returned no refresh token; re-consent is required"
            )
        expires_at = (
            credentials.expiry.replace(tzinfo=UTC) if credentials.expiry is not None else None
        )
        return ExchangedCredentials(
            access_token=str(credentials.token),
            refresh_token=str(credentials.refresh_token),
            expires_at=expires_at,
        )

    def _build_flow(self, *, state: str | None = None) -> Flow:
        return Flow.from_client_config(
            self._client_config,
            scopes=list(YOUTUBE_SCOPES),
            redirect_uri=self._redirect_uri,
            state=state,
            autogenerate_code_verifier=False,
        )


def classify_http_error(exc: HttpError, *, operation: str) -> YouTubeApiError:
    status = _http_status(exc)
    reason = _http_error_reason(exc)
    retryable = status == 429 or (status is not None and status >= 500) or (
        reason in _RETRYABLE_REASONS
    )
    message = f"{operation} failed status={status} reason={reason or 'unknown'}"
    return YouTubeApiError(message, status=status, retryable=retryable, reason=reason)


def to_sync_error(exc: YouTubeApiError) -> SyncError:
    """Map one failed API call onto the job-level error taxonomy."""
    if exc.retryable:
        retry_after = 3600 if exc.reason == "quotaExceeded" else 60
        return TransientSyncError(str(exc), retry_after_seconds=retry_after)
    if exc.status == 404:
        return RemoteResourceNotFoundError(str(exc))
    return SyncTerminalError(str(exc))


def _execute(request: Any, *, operation: str) -> dict[str, Any]:
    try:
        response = request.execute()
    except HttpError as exc:
        error = classify_http_error(exc, operation=operation)
        LOGGER.warning(
            "youtube api call failed operation=%s status=%s retryable=%s",
            operation,
            error.status,
            error.retryable,
        )
        raise error from exc
    except (OSError, TimeoutError, httplib2.HttpLib2Error) as exc:
        LOGGER.warning("youtube api transport failure operation=%s", operation, exc_info=True)
        raise YouTubeApiError(
            f"{operation} transport failure: {exc}",
            status=None,
            retryable=True,
        ) from exc
    if not isinstance(response, dict):
        return {}
    return cast(dict[str, Any], response)


def _parse(
    model: type[ModelT],
    raw: dict[str, Any],
    *,
    operation: str,
) -> ModelT:
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise YouTubeApiError(
            f"{operation} returned an unexpected payload: {exc.error_count()} errors",
            status=None,
            retryable=False,
        ) from exc


def _remote_channel(response: ChannelListResponse) -> RemoteChannel:
    channel = response.items[0]
    return RemoteChannel(
        channel_id=channel.id,
        title=channel.snippet.title,
        thumbnail_url=channel.snippet.best_thumbnail_url(),
        subscriber_count=channel.statistics.subscriber_count,
        uploads_playlist_id=channel.content_details.related_playlists.uploads,
    )


def _http_status(exc: HttpError) -> int | None:
    raw_status = getattr(exc.resp, "status", None)
    try:
        return int(raw_status) if raw_status is not None else None
    except (TypeError, ValueError):
        return None


def _http_error_reason(exc: HttpError) -> str | None:
    content = exc.content
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    if not isinstance(content, str) or not content.strip():
        return None
    try:
        payload = json.loads(content)
    except json.JSONDecodeError:
        return None
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return None
    errors = error.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        reason = errors[0].get("reason")
        if isinstance(reason, str):
            return reason
    status = error.get("status")
    return status if isinstance(status, str) else None
