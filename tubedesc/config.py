from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".tubedesc"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{TUBEDESC_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from a `TUBEDESC_*` environment variable (or `.env`)
    and documented here together with its default.
    """

    model_config = SettingsConfigDict(
        env_prefix="TUBEDESC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for application logs. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level. The file log always records DEBUG.",
    )

    # Scheduler and job queue.
    scheduler_enabled: bool = Field(
        default=True,
        validation_alias="TUBEDESC_ENABLE_SCHEDULER",
        description="Enable the background loop that drains jobs and schedules channel syncs.",
    )
    scheduler_poll_interval_seconds: int = Field(
        default=15,
        description="How often the scheduler drains due jobs.",
    )
    channel_sync_interval_seconds: int = Field(
        default=21_600,
        description="Cadence of the periodic catalog sync enqueued for every connected channel.",
    )
    jobs_per_tick: int = Field(
        default=10,
        description="Maximum jobs claimed per scheduler tick.",
    )
    job_max_attempts: int = Field(
        default=5,
        description="Attempts before a transiently failing job is marked failed.",
    )
    job_retry_base_seconds: int = Field(
        default=30,
        description="Base exponential backoff for transient job failures.",
    )
    job_retry_max_seconds: int = Field(
        default=3_600,
        description="Maximum backoff between job attempts.",
    )

    # Sync pipeline tuning.
    token_refresh_buffer_seconds: int = Field(
        default=300,
        description="Access tokens expiring within this window are refreshed before use.",
    )
    sync_lease_seconds: int = Field(
        default=1_800,
        description="Lease length for a running catalog sync; an expired lease frees a stuck channel.",
    )
    update_batch_size: int = Field(
        default=10,
        description="Videos per description-update batch.",
    )
    update_max_concurrency: int = Field(
        default=5,
        description="Maximum in-flight YouTube update calls per update job.",
    )
    update_videos_per_job: int = Field(
        default=1000,
        description="Maximum videos carried by one queued videos.update job; larger selections are split.",
    )
    youtube_page_size: int = Field(
        default=50,
        description="Page size for uploads playlist pagination (capped by YouTube API at 50).",
    )

    # OAuth and credential storage.
    encryption_key: str | None = Field(
        default=None,
        description="Fernet key used to encrypt OAuth tokens at rest.",
    )
    youtube_client_id: str | None = Field(
        default=None,
        description="Google OAuth client id.",
    )
    youtube_client_secret: str | None = Field(
        default=None,
        description="Google OAuth client secret.",
    )
    youtube_redirect_uri: str = Field(
        default="http://localhost:8000/oauth/callback",
        description="Redirect URI registered for the OAuth web client.",
    )
    youtube_token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint used for code exchange and refresh grants.",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Emit structured telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry destination.",
    )

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator(
        "encryption_key",
        "youtube_client_id",
        "youtube_client_secret",
        mode="before",
    )
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("youtube_redirect_uri", "youtube_token_uri", mode="before")
    @classmethod
    def _normalize_urls(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("OAuth URLs must be strings.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("OAuth URLs must not be empty.")
        return normalized


def _validate_production_configuration(
    *,
    encryption_key: str | None,
    youtube_client_id: str | None,
    youtube_client_secret: str | None,
) -> None:
    errors: list[str] = []

    if encryption_key is None:
        errors.append("TUBEDESC_ENCRYPTION_KEY is required to store OAuth tokens.")
    if youtube_client_id is None:
        errors.append("TUBEDESC_YOUTUBE_CLIENT_ID is required for OAuth refresh.")
    if youtube_client_secret is None:
        errors.append("TUBEDESC_YOUTUBE_CLIENT_SECRET is required for OAuth refresh.")

    if errors:
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ValueError(f"Invalid production configuration:\n{bullets}")


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings(*, validate_secrets: bool = True) -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)

    if validate_secrets:
        _validate_production_configuration(
            encryption_key=settings.encryption_key,
            youtube_client_id=settings.youtube_client_id,
            youtube_client_secret=settings.youtube_client_secret,
        )

    return settings
