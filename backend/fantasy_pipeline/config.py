"""Application configuration using pydantic-settings."""

from datetime import UTC, datetime
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing or unusable."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = ""
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_command_timeout: float = 300.0

    # Provider (fantasy data API)
    provider_api_base_url: str = "https://fantasysports.yahooapis.com/fantasy/v2"
    provider_timeout_seconds: float = 30.0
    provider_max_attempts: int = 3
    provider_page_size: int = 25
    schedule_api_url: str = (
        "https://site.api.espn.com/apis/site/v2/sports/football/nfl/scoreboard"
    )

    # OAuth token refresh
    token_refresh_url: str = "https://api.login.yahoo.com/oauth2/get_token"
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    token_refresh_margin_seconds: int = 300  # Refresh 5 minutes before expiry
    credential_cache_ttl: int = 300

    # User whose credential runs jobs that are not tied to a user
    admin_user_id: str | None = None

    # Worker bounds
    worker_max_jobs: int = 50
    worker_max_runtime_seconds: int = 3 * 60 * 60
    worker_job_delay_seconds: float = 1.0
    health_host: str = "0.0.0.0"
    health_port: int = 3000

    # Compute control API (machines-style REST API)
    compute_api_base_url: str = "https://api.machines.dev/v1"
    compute_app_name: str = "fantasy-football-sync-vm"
    compute_api_token: str = ""
    compute_machine_image: str | None = None
    compute_machine_id: str | None = None

    # Fan-out widths inside a single job
    league_batch_size: int = 3
    entity_batch_size: int = 10

    # Season (defaults to the current calendar year)
    season_year: int | None = None

    # CORS - comma-separated list of allowed origins
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Logging
    log_level: str = "INFO"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def current_season_year(self) -> int:
        """Configured season, or the current calendar year."""
        return self.season_year or datetime.now(UTC).year

    @property
    def compute_image(self) -> str:
        """Image used when the control API has to create an instance."""
        return self.compute_machine_image or f"{self.compute_app_name}:latest"

    def require_admin_user_id(self) -> str:
        """Return the administrative user id or fail loudly."""
        if not self.admin_user_id:
            raise ConfigurationError(
                "ADMIN_USER_ID is not configured. "
                "Jobs without a user need an administrative credential."
            )
        return self.admin_user_id


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
