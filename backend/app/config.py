"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Workflow Automation Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, testing, production

    # Storage Settings
    STORE_BACKEND: str = "memory"  # memory or sql
    DATABASE_URL: str = "sqlite+aiosqlite:///./workflows.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Execution Settings
    DEFAULT_STEP_TIMEOUT_SECONDS: float = 300.0
    # Real seconds per workflow "minute" (delays, auto-approval, retry delay, timeouts)
    TIME_SCALE_SECONDS_PER_MINUTE: float = 60.0
    MAX_CONCURRENT_EXECUTIONS_DEFAULT: int = 10
    # Optimistic-lock retries before a write gives up
    MAX_UPDATE_ATTEMPTS: int = 5
    # Upper bound on step visits per execution (guards GOTO loops)
    MAX_STEPS_PER_EXECUTION: int = 1000

    # Integrations
    API_CALL_TIMEOUT_SECONDS: float = 30.0
    API_CALL_ALLOW_PRIVATE_HOSTS: bool = False

    # Analytics
    ANALYTICS_COST_PER_EXECUTION: float = 150.0
    ANALYTICS_HOURS_SAVED_PER_EXECUTION: float = 2.0
    ANALYTICS_SLOW_DURATION_MS: float = 300000.0
    ANALYTICS_RELIABILITY_THRESHOLD: float = 0.8

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8080"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    def minutes_to_seconds(self, minutes: float) -> float:
        """Convert workflow minutes to real seconds using the configured time scale."""
        return max(0.0, float(minutes) * self.TIME_SCALE_SECONDS_PER_MINUTE)

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
