"""Configuration settings for the review workflow engine."""

import logging

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "reviewflow"
    db_user: str = "reviewflow"
    db_password: str = "reviewflow"
    database_url_override: str | None = None

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_broadcast_enabled: bool = False

    # Broadcasting
    broadcast_capacity: int = 100
    broadcast_idle_seconds: int = 600

    # Approvals
    default_min_approvals: int = 1

    # Telemetry / logging
    analytics_enabled: bool = True
    log_level: str = "INFO"

    # HTTP
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "REVIEWFLOW_"
        env_file = ".env"


def configure_logging(level: str | None = None) -> None:
    """Install a basic stderr handler for CLI and server entry points."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Global settings instance
settings = Settings()
