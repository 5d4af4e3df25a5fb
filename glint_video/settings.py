from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration for the playback resolver, its SQLite store and the API.

    Values are loaded from environment variables and `.env`.

    Notes:
    - Provider credentials are optional; without them requests go out unauthenticated
      (useful against a local proxy that injects auth).
    - Classifier thresholds follow the provider's id conventions and rarely need tuning.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    GV_DB_PATH: Path = Field(default=Path("data/glint_video.db"))

    # API
    GV_API_HOST: str = Field(default="127.0.0.1")
    GV_API_PORT: int = Field(default=8124)
    GV_API_CORS_ALLOW_ALL: bool = Field(default=True)

    # API logging (diagnostic)
    GV_API_LOG_DIR: Path = Field(default=Path("_logs"))
    GV_API_LOG_LEVEL: str = Field(default="INFO")
    # If enabled, logs every request (webhook deliveries can be noisy).
    GV_API_LOG_ACCESS: bool = Field(default=False)
    # Timed rotation retention count (days). Old log files are auto-deleted.
    GV_API_LOG_BACKUP_COUNT: int = Field(default=14)
    # Per-module overrides, e.g. "resolver=DEBUG,webhooks=WARNING" (bare names are glint_video modules).
    GV_LOG_LEVELS: str = Field(default="")
    # Separate rotating file for webhook / reconcile / store writes.
    GV_LOG_EVENTS: bool = Field(default=True)
    # Console threshold for one-shot CLI commands (stderr).
    GV_CLI_LOG_LEVEL: str = Field(default="WARNING")

    # Transcoding provider (Mux-compatible asset API)
    GV_PROVIDER_BASE_URL: str = Field(default="https://api.mux.com")
    GV_PROVIDER_TOKEN_ID: str | None = Field(default=None)
    GV_PROVIDER_TOKEN_SECRET: str | None = Field(default=None)
    GV_PROVIDER_TIMEOUT_SEC: float = Field(default=10.0)

    # URL shapes
    GV_STREAM_HOST: str = Field(default="stream.mux.com")
    GV_IMAGE_HOST: str = Field(default="image.mux.com")

    # Identifier conventions
    GV_UPLOAD_ID_MIN_LENGTH: int = Field(default=50)
    # Comma-separated; empty disables prefix matching.
    GV_UPLOAD_ID_PREFIXES: str = Field(default="")
    GV_ASSET_ID_MIN_LENGTH: int = Field(default=40)
    GV_PLAYBACK_ID_MAX_LENGTH: int = Field(default=30)

    # Resolution cache: pending / provider-unavailable entries expire after this.
    GV_CACHE_TRANSIENT_TTL_SEC: float = Field(default=30.0)

    # Batch reconciliation: max concurrent provider calls.
    GV_RECONCILE_CONCURRENCY: int = Field(default=4)

    # Static fallback mappings (YAML: reference -> playback id), loaded at startup.
    GV_SEED_FILE: Path | None = Field(default=None)

    @property
    def upload_id_prefixes(self) -> tuple[str, ...]:
        return tuple(p.strip() for p in str(self.GV_UPLOAD_ID_PREFIXES or "").split(",") if p.strip())


def load_settings() -> Settings:
    s = Settings()
    s.GV_STREAM_HOST = s.GV_STREAM_HOST.strip().strip("/")
    s.GV_IMAGE_HOST = s.GV_IMAGE_HOST.strip().strip("/")
    s.GV_PROVIDER_BASE_URL = s.GV_PROVIDER_BASE_URL.rstrip("/")
    if s.GV_RECONCILE_CONCURRENCY < 1:
        s.GV_RECONCILE_CONCURRENCY = 1
    # Ensure parent dir exists
    s.GV_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    return s
