"""Settings for the equipment services, read from the environment and ``.env``."""
from datetime import timedelta
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./equipment.db",
        description="SQLAlchemy database URL. PostgreSQL in production, SQLite for development.",
    )
    run_db_migrations: bool = Field(default=False, description="Create missing tables on startup")
    jwt_secret: str = Field(default="super-secret", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Token lifetime in minutes")
    scanner_api_key: str = Field(default="scanner-key", description="API key sent by the RFID kiosk reader")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="60/minute", description="Global rate limiting rule")
    scan_rate_limit: str = Field(default="120/minute", description="Rate limit for the kiosk scan endpoint")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")
    loan_session_timeout_seconds: int = Field(
        default=180,
        description="Idle time after which an open loan session is discarded on the next scan",
    )
    usage_history_limit: int = Field(default=50, description="Default page size for usage-log history")
    equipment_history_limit: int = Field(default=20, description="Default page size for per-unit history")
    log_dir: str = Field(default="logs", description="Directory for the per-service audit logs")
    log_level: str = Field(default="INFO", description="Level for the core module loggers")

    equipment_service_port: int = 8001
    reservations_service_port: int = 8002
    loans_service_port: int = 8003

    @field_validator("loan_session_timeout_seconds", "usage_history_limit", "equipment_history_limit")
    @classmethod
    def must_be_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @property
    def loan_session_timeout(self) -> timedelta:
        return timedelta(seconds=self.loan_session_timeout_seconds)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings_cache() -> None:
    """Drop the cached Settings so the next ``get_settings()`` re-reads the environment."""

    get_settings.cache_clear()
