"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Algorithm tunables (retry delays, conflict thresholds, device table) are
    not here; they live in ``src/healthsync/sync_config.yaml``.
    """

    # --- App ---
    app_name: str = "HealthSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Persisted sync state ---
    storage_backend: str = "json"  # memory | json | sqlite
    storage_path: str = ".healthsync/state.json"

    # --- Platform API ---
    platform_base_url: str = "http://localhost:8080"
    platform_api_key: str = ""  # sent as a bearer token when set
    platform_timeout_seconds: float = 30.0

    # --- Background sync ---
    background_task_id: str = "health-sync-background"
    device_manufacturer: str = ""  # reported by the host app, empty = unknown

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "HEALTHSYNC_",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
