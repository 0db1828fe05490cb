"""
Secrets Exporter - Settings

Settings are loaded from environment variables with the SECRETS_EXPORTER_
prefix, or from a .env file in the working directory.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Exporter configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SECRETS_EXPORTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Scrape listener
    HOST: str = "0.0.0.0"
    METRIC_PORT: int = Field(default=9091, ge=0, le=65535)

    # Number of reconciliation workers
    THREADINESS: int = Field(default=1, ge=1)

    # Informer-level resync: re-delivers an update for every cached secret
    RESYNC_INTERVAL: float = Field(default=15 * 60, gt=0)

    # Application-level recheck: re-enqueues every cached key
    RECHECK_INTERVAL: float = Field(default=30 * 60, gt=0)

    # Limit the exporter to this namespace ("" watches all namespaces)
    NAMESPACE: str = ""

    # Path to a kube config; empty means in-cluster, then the default file
    KUBECONFIG: str = ""

    # Prefix of the exported metric names
    METRIC_NAMESPACE: str = "secrets_exporter"

    # Startup and shutdown bounds (seconds)
    CACHE_SYNC_TIMEOUT: float = Field(default=60, gt=0)
    SHUTDOWN_TIMEOUT: float = Field(default=10, gt=0)

    # Per-key retry backoff of the work queue (seconds)
    BACKOFF_BASE_DELAY: float = Field(default=30, gt=0)
    BACKOFF_MAX_DELAY: float = Field(default=600, gt=0)

    # Upper bound for a single server-side watch request (seconds)
    WATCH_TIMEOUT: int = Field(default=300, ge=1)

    # Logging level
    LOG_LEVEL: str = "INFO"

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "Settings":
        if self.BACKOFF_MAX_DELAY < self.BACKOFF_BASE_DELAY:
            raise ValueError(
                "BACKOFF_MAX_DELAY must be greater than or equal to BACKOFF_BASE_DELAY"
            )
        return self
