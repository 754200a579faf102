from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, cast

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

from tubedesc.config import AppSettings, load_settings
from tubedesc.dependencies import (
    ServiceContainer,
    build_services,
    get_services,
    reset_cached_dependencies,
)
from tubedesc.main import create_app
from tubedesc.repositories.channel_repository import ChannelRecord
from tubedesc.services.token_cipher import TokenCipher
from tubedesc.services.youtube_client import (
    ExchangedCredentials,
    RefreshedAccessToken,
    RemoteChannel,
    RemoteVideo,
    RemoteVideoPage,
)


class FakeYouTubeClient:
    """In-memory stand-in for YouTubeDataClient."""

    def __init__(self, *, page_size: int = 2) -> None:
        self.page_size = page_size
        self.channels: dict[str, RemoteChannel] = {}
        self.uploads: dict[str, list[RemoteVideo]] = {}
        self.update_failures: dict[str, Exception] = {}
        self.updates: list[tuple[str, str, str]] = []
        self.page_requests: list[str | None] = []
        self.list_error: Exception | None = None
        self.own_channel_id: str | None = None
        self._lock = threading.Lock()

    def add_channel(self, remote_channel_id: str, *, title: str = "Test Channel") -> None:
        self.channels[remote_channel_id] = RemoteChannel(
            channel_id=remote_channel_id,
            title=title,
            thumbnail_url=f"https://img.example/{remote_channel_id}.jpg",
            subscriber_count=1200,
            uploads_playlist_id=f"UU{remote_channel_id}",
        )
        self.uploads.setdefault(f"UU{remote_channel_id}", [])

    def set_uploads(self, remote_channel_id: str, videos: list[RemoteVideo]) -> None:
        self.uploads[f"UU{remote_channel_id}"] = list(videos)

    def fetch_own_channel(self, access_token: str) -> RemoteChannel:
        _ = access_token
        assert self.own_channel_id is not None
        return self.channels[self.own_channel_id]

    def fetch_channel(self, access_token: str, remote_channel_id: str) -> RemoteChannel:
        _ = access_token
        return self.channels[remote_channel_id]

    def get_uploads_playlist_id(self, access_token: str, remote_channel_id: str) -> str:
        _ = access_token
        if self.list_error is not None:
            raise self.list_error
        playlist_id = self.channels[remote_channel_id].uploads_playlist_id
        assert playlist_id is not None
        return playlist_id

    def list_upload_page(
        self,
        access_token: str,
        playlist_id: str,
        *,
        page_token: str | None = None,
    ) -> RemoteVideoPage:
        _ = access_token
        self.page_requests.append(page_token)
        videos = self.uploads.get(playlist_id, [])
        start = int(page_token) if page_token is not None else 0
        end = start + self.page_size
        next_token = str(end) if end < len(videos) else None
        return RemoteVideoPage(videos=videos[start:end], next_page_token=next_token)

    def update_video_description(self, access_token: str, video_id: str, description: str) -> None:
        failure = self.update_failures.get(video_id)
        if failure is not None:
            raise failure
        with self._lock:
            self.updates.append((access_token, video_id, description))


class FakeTokenRefresher:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.error: Exception | None = None
        self.access_token = "refreshed-access-token"
        self.expires_in_seconds: int | None = 3599
        self.rotated_refresh_token: str | None = None

    def refresh(self, refresh_token: str) -> RefreshedAccessToken:
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        return RefreshedAccessToken(
            access_token=self.access_token,
            expires_in_seconds=self.expires_in_seconds,
            refresh_token=self.rotated_refresh_token,
        )


class FakeOAuthFlow:
    def __init__(self) -> None:
        self.codes: list[str] = []
        self.error: Exception | None = None

    def authorization_url(self, *, state: str | None = None) -> str:
        return f"https://accounts.example/auth?state={state or ''}"

    def exchange_code(self, code: str) -> ExchangedCredentials:
        self.codes.append(code)
        if self.error is not None:
            raise self.error
        return ExchangedCredentials(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        )


@pytest.fixture
def runtime_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("TUBEDESC_DATA_DIR", str(data_dir))
    monkeypatch.setenv("TUBEDESC_ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("TUBEDESC_ENCRYPTION_KEY", Fernet.generate_key().decode("ascii"))
    monkeypatch.setenv("TUBEDESC_YOUTUBE_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("TUBEDESC_YOUTUBE_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setenv("TUBEDESC_TELEMETRY_SINK", "none")
    reset_cached_dependencies()
    yield data_dir
    reset_cached_dependencies()


@pytest.fixture
def settings(runtime_env: Path) -> AppSettings:
    _ = runtime_env
    return load_settings()


@pytest.fixture
def fake_youtube() -> FakeYouTubeClient:
    return FakeYouTubeClient()


@pytest.fixture
def fake_refresher() -> FakeTokenRefresher:
    return FakeTokenRefresher()


@pytest.fixture
def fake_oauth() -> FakeOAuthFlow:
    return FakeOAuthFlow()


@pytest.fixture
def services(
    settings: AppSettings,
    fake_youtube: FakeYouTubeClient,
    fake_refresher: FakeTokenRefresher,
    fake_oauth: FakeOAuthFlow,
) -> ServiceContainer:
    return build_services(
        settings,
        youtube_client=cast(Any, fake_youtube),
        token_refresher=fake_refresher,
        oauth_flow=cast(Any, fake_oauth),
    )


@pytest.fixture
def connect_channel(
    services: ServiceContainer,
    fake_youtube: FakeYouTubeClient,
) -> Callable[..., ChannelRecord]:
    def _connect(
        *,
        remote_channel_id: str = "UC_test",
        user_id: str = "user-1",
        expires_in: timedelta = timedelta(hours=1),
    ) -> ChannelRecord:
        fake_youtube.add_channel(remote_channel_id)
        cipher = TokenCipher(services.settings.encryption_key or "")
        return services.channel_repository.upsert_connected_channel(
            user_id=user_id,
            remote_channel_id=remote_channel_id,
            title="Test Channel",
            thumbnail_url=None,
            subscriber_count=10,
            access_token_encrypted=cipher.encrypt(f"access-{remote_channel_id}"),
            refresh_token_encrypted=cipher.encrypt(f"refresh-{remote_channel_id}"),
            token_expires_at=datetime.now(UTC) + expires_in,
        )

    return _connect


@pytest.fixture
def client(services: ServiceContainer) -> Iterator[TestClient]:
    app = create_app()
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as test_client:
        yield test_client
