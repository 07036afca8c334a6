from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".channel-insights"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "job_workers_enabled",
    "rate_limit_trust_forwarded_for",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{CHANNEL_INSIGHTS_DATA_DIR}}/{relative_path}` when not explicitly set."


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

    Every option is read from `CHANNEL_INSIGHTS_*` environment variables (or `.env`).
    The YouTube API key is the only mandatory value; `load_settings` refuses to
    build a configuration without it.
    """

    model_config = SettingsConfigDict(
        env_prefix="CHANNEL_INSIGHTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the database and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=(
            "SQLite database path; also backs the job queue. "
            f"{_data_dir_default_note(Path('state.db'))}"
        ),
    )

    # YouTube Data API access.
    youtube_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CHANNEL_INSIGHTS_YOUTUBE_API_KEY", "YOUTUBE_API_KEY"),
        description="YouTube Data API v3 key. Required at startup.",
    )
    youtube_api_base_url: str = Field(
        default="https://www.googleapis.com/youtube/v3",
        description="YouTube Data API base URL.",
    )
    youtube_http_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout applied to every outbound YouTube API request.",
    )

    # Quota guardrails.
    youtube_daily_quota_limit: int = Field(
        default=10_000,
        ge=1,
        description="Quota units allowed per rolling 24 hours.",
    )
    youtube_requests_per_minute: int = Field(
        default=100,
        ge=1,
        description="Outbound requests allowed per rolling 60 seconds.",
    )
    youtube_quota_retry_delay_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Single wait applied before re-checking an exhausted local quota.",
    )

    # Response cache.
    response_cache_max_entries: int = Field(
        default=2_000,
        ge=1,
        description="Maximum API responses memoized in process.",
    )
    response_cache_list_ttl_seconds: int = Field(
        default=300,
        description="TTL for search and video listing responses.",
    )
    response_cache_channel_ttl_seconds: int = Field(
        default=1_800,
        description="TTL for channel lookups.",
    )
    response_cache_default_ttl_seconds: int = Field(
        default=600,
        description="TTL for every other endpoint.",
    )

    # Job queue.
    job_workers_enabled: bool = Field(
        default=True,
        description="Start background job workers with the API process.",
    )
    job_worker_count: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Number of concurrent job worker threads.",
    )
    job_poll_interval_seconds: float = Field(
        default=1.0,
        description="Idle wait between worker polls for pending jobs.",
    )
    job_shutdown_timeout_seconds: float = Field(
        default=30.0,
        ge=0,
        description="How long shutdown waits for in-flight jobs before giving up.",
    )
    job_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Execution attempts per job for transient failures.",
    )
    job_retry_base_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Initial exponential backoff between job attempts.",
    )
    video_fetch_default_max_pages: int = Field(
        default=5,
        ge=1,
        description="Pages walked by a video fetch job when the caller omits maxPages.",
    )

    # Route rate limits.
    fetch_rate_limit_max_requests: int = Field(
        default=5,
        ge=1,
        description="Fetch-job requests allowed per client in each window.",
    )
    read_rate_limit_max_requests: int = Field(
        default=20,
        ge=1,
        description="Read requests allowed per client in each window.",
    )
    rate_limit_window_seconds: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Route rate-limit window size in seconds.",
    )
    rate_limit_trust_forwarded_for: bool = Field(
        default=False,
        description=(
            "Key route limits on the last `X-Forwarded-For` hop. Enable only behind a "
            "reverse proxy that appends the client address."
        ),
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("CHANNEL_INSIGHTS_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("CHANNEL_INSIGHTS_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("youtube_api_base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("CHANNEL_INSIGHTS_YOUTUBE_API_BASE_URL must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("CHANNEL_INSIGHTS_YOUTUBE_API_BASE_URL must not be empty.")
        return normalized

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

    @field_validator("youtube_api_key", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _validate_required_secrets(*, youtube_api_key: str | None) -> None:
    errors: list[str] = []

    if youtube_api_key is None:
        errors.append(
            "CHANNEL_INSIGHTS_YOUTUBE_API_KEY (or YOUTUBE_API_KEY) is required."
        )

    if errors:
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ValueError(f"Invalid configuration:\n{bullets}")


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


def load_settings(*, require_api_key: bool = True) -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)

    if require_api_key:
        _validate_required_secrets(youtube_api_key=settings.youtube_api_key)

    return settings
