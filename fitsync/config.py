"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "FitSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production
    cors_origins: list[str] = ["http://localhost:3000"]

    # --- Document store ---
    # Postgres connection string; unset = in-process store (dev / tests)
    database_url: str | None = None

    # --- Fitbit ---
    fitbit_client_id: str = ""
    fitbit_client_secret: str = ""
    fitbit_locale: str = "en_US"  # Accept-Language sent to Fitbit; decides units

    # --- Strava ---
    strava_client_id: str = ""
    strava_client_secret: str = ""
    strava_per_page: int = 50
    strava_max_pages: int = 3

    # --- Google Fit ---
    google_client_id: str = ""
    google_client_secret: str = ""

    # --- Provider calls ---
    provider_timeout_seconds: float = 20.0
    retry_backoff_seconds: float = 1.0
    token_refresh_margin_seconds: int = 60

    # --- Sync ---
    rate_limit_timezone: str = "UTC"  # calendar-day boundary for call budgets
    max_sync_lookback_days: int = 7

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
