from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from tubedesc.config import AppSettings, load_settings
from tubedesc.repositories.channel_repository import ChannelRepository
from tubedesc.repositories.composition_repository import CompositionRepository
from tubedesc.repositories.database import Database
from tubedesc.repositories.jobs_repository import JobsRepository
from tubedesc.repositories.video_repository import VideoRepository
from tubedesc.services.catalog_reconciler import CatalogReconciler
from tubedesc.services.channel_connect_service import ChannelConnectService
from tubedesc.services.credential_manager import CredentialManager
from tubedesc.services.job_runner import JobRunner
from tubedesc.services.token_cipher import TokenCipher
from tubedesc.services.update_dispatcher import UpdateDispatcher
from tubedesc.services.youtube_client import (
    GoogleTokenRefresher,
    OAuthFlowHelper,
    TokenRefresher,
    YouTubeDataClient,
)
from tubedesc.telemetry import TelemetryClient, build_telemetry_client


@dataclass(frozen=True)
class ServiceContainer:
    settings: AppSettings
    database: Database
    channel_repository: ChannelRepository
    composition_repository: CompositionRepository
    video_repository: VideoRepository
    jobs_repository: JobsRepository
    credential_manager: CredentialManager
    catalog_reconciler: CatalogReconciler
    update_dispatcher: UpdateDispatcher
    job_runner: JobRunner
    channel_connect_service: ChannelConnectService
    telemetry: TelemetryClient


def build_services(
    settings: AppSettings,
    *,
    telemetry: TelemetryClient | None = None,
    youtube_client: YouTubeDataClient | None = None,
    token_refresher: TokenRefresher | None = None,
    oauth_flow: OAuthFlowHelper | None = None,
) -> ServiceContainer:
    if settings.encryption_key is None:
        raise ValueError("TUBEDESC_ENCRYPTION_KEY is required to build the sync services.")

    telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
    database = Database(settings.db_path)
    database.initialize()

    channel_repository = ChannelRepository(database)
    composition_repository = CompositionRepository(database)
    video_repository = VideoRepository(database)
    jobs_repository = JobsRepository(database)
    cipher = TokenCipher(settings.encryption_key)
    youtube = youtube_client or YouTubeDataClient(page_size=settings.youtube_page_size)

    credential_manager = CredentialManager(
        channel_repository=channel_repository,
        cipher=cipher,
        refresher=token_refresher
        or GoogleTokenRefresher(
            client_id=settings.youtube_client_id or "",
            client_secret=settings.youtube_client_secret or "",
            token_uri=settings.youtube_token_uri,
        ),
        refresh_buffer_seconds=settings.token_refresh_buffer_seconds,
        telemetry=telemetry,
    )
    catalog_reconciler = CatalogReconciler(
        channel_repository=channel_repository,
        video_repository=video_repository,
        credential_manager=credential_manager,
        youtube_client=youtube,
        lease_seconds=settings.sync_lease_seconds,
        telemetry=telemetry,
    )
    update_dispatcher = UpdateDispatcher(
        video_repository=video_repository,
        composition_repository=composition_repository,
        channel_repository=channel_repository,
        credential_manager=credential_manager,
        youtube_client=youtube,
        batch_size=settings.update_batch_size,
        max_concurrency=settings.update_max_concurrency,
        telemetry=telemetry,
    )
    job_runner = JobRunner(
        jobs_repository=jobs_repository,
        channel_repository=channel_repository,
        catalog_reconciler=catalog_reconciler,
        update_dispatcher=update_dispatcher,
        max_attempts=settings.job_max_attempts,
        retry_base_seconds=settings.job_retry_base_seconds,
        retry_max_seconds=settings.job_retry_max_seconds,
        videos_per_job=settings.update_videos_per_job,
        telemetry=telemetry,
    )
    channel_connect_service = ChannelConnectService(
        channel_repository=channel_repository,
        cipher=cipher,
        oauth_flow=oauth_flow
        or OAuthFlowHelper(
            client_id=settings.youtube_client_id or "",
            client_secret=settings.youtube_client_secret or "",
            redirect_uri=settings.youtube_redirect_uri,
            token_uri=settings.youtube_token_uri,
        ),
        youtube_client=youtube,
        job_runner=job_runner,
        telemetry=telemetry,
    )

    return ServiceContainer(
        settings=settings,
        database=database,
        channel_repository=channel_repository,
        composition_repository=composition_repository,
        video_repository=video_repository,
        jobs_repository=jobs_repository,
        credential_manager=credential_manager,
        catalog_reconciler=catalog_reconciler,
        update_dispatcher=update_dispatcher,
        job_runner=job_runner,
        channel_connect_service=channel_connect_service,
        telemetry=telemetry,
    )


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_services() -> ServiceContainer:
    return build_services(get_settings(), telemetry=get_telemetry())


def reset_cached_dependencies() -> None:
    get_services.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
