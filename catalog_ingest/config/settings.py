"""
Application configuration management using Pydantic settings.

Layered settings with environment variable support and validation. Each component
reads its own prefix; ApplicationSettings aggregates them.
"""
from functools import lru_cache
from typing import Optional

from pydantic import ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

SUPPORTED_URL_SCHEMES = ("postgresql", "postgresql+asyncpg", "sqlite+aiosqlite")


class DatabaseSettings(BaseSettings):
    """Destination database configuration with connection pooling"""

    database_url: Optional[str] = Field(None, description="Database connection URL")
    database_pool_size: int = Field(default=5, ge=1, description="Connection pool size")
    database_max_overflow: int = Field(default=10, ge=0, description="Maximum overflow connections")
    database_pool_timeout: int = Field(default=30, ge=1, description="Pool connection timeout")
    database_pool_recycle: int = Field(default=3600, description="Connection recycle interval")
    database_echo: bool = Field(default=False)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Accept PostgreSQL or async SQLite URLs, normalizing to an async driver"""
        if not v:
            return None
        scheme = v.split("://", 1)[0]
        if scheme not in SUPPORTED_URL_SCHEMES:
            raise ValueError(
                f"Database URL scheme must be one of {list(SUPPORTED_URL_SCHEMES)}"
            )
        if scheme == "postgresql":
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    def is_postgres(self) -> bool:
        return bool(self.database_url) and self.database_url.startswith("postgresql")

    model_config = ConfigDict(env_prefix="DB_")


class IngestionSettings(BaseSettings):
    """Pipeline processing configuration"""

    batch_size: int = Field(500, ge=1, le=10000, description="Rows per write statement")
    max_retries: int = Field(3, ge=0, le=10, description="Retries for parse and batch writes")
    backoff_base_seconds: float = Field(2.0, ge=0.0, description="backoff(n) = base ** n")
    max_backoff_seconds: float = Field(60.0, ge=0.0)
    gc_checkpoint_interval: int = Field(
        1000, ge=1, description="Records between forced garbage collections"
    )
    default_currency: str = Field("EUR", min_length=3, max_length=3)
    lock_enabled: bool = Field(True, description="Hold an advisory lock during a run")
    lock_stale_after_seconds: int = Field(
        21600, ge=60, description="Table-based locks older than this may be taken over"
    )

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v):
        return v.upper()

    model_config = ConfigDict(env_prefix="INGEST_")


class MonitoringSettings(BaseSettings):
    """Logging and run-history configuration"""

    log_level: str = Field("INFO")
    log_format: str = Field("json")  # json, text
    recent_runs_limit: int = Field(10, ge=1, le=1000)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format"""
        if v not in ["json", "text"]:
            raise ValueError('Log format must be "json" or "text"')
        return v

    model_config = ConfigDict(env_prefix="MONITORING_")


class ApplicationSettings(BaseSettings):
    """Main application configuration"""

    app_name: str = Field("Catalog Feed Ingestion")
    app_version: str = Field("1.0.0")
    environment: str = Field("development")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment name"""
        valid_environments = ["development", "staging", "production"]
        if v not in valid_environments:
            raise ValueError(f"Environment must be one of {valid_environments}")
        return v

    def is_production(self) -> bool:
        return self.environment == "production"

    def is_development(self) -> bool:
        return self.environment == "development"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> ApplicationSettings:
    """
    Get application settings with caching.
    Uses LRU cache to avoid re-reading environment on every call.
    """
    return ApplicationSettings()


def validate_settings(settings: Optional[ApplicationSettings] = None) -> ApplicationSettings:
    """
    Validate settings required for an ingestion run.
    Call this before a run to fail fast on configuration errors.
    """
    settings = settings or get_settings()
    if not settings.database.database_url:
        raise ValueError("Database URL is required (DB_DATABASE_URL)")
    return settings


def get_environment_info() -> dict:
    """Get current environment information for debugging"""
    settings = get_settings()

    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "environment": settings.environment,
        "database_configured": bool(settings.database.database_url),
        "database_backend": (
            settings.database.database_url.split("://", 1)[0]
            if settings.database.database_url
            else None
        ),
        "batch_size": settings.ingestion.batch_size,
        "max_retries": settings.ingestion.max_retries,
        "lock_enabled": settings.ingestion.lock_enabled,
        "log_level": settings.monitoring.log_level,
    }


__all__ = [
    "DatabaseSettings",
    "IngestionSettings",
    "MonitoringSettings",
    "ApplicationSettings",
    "get_settings",
    "validate_settings",
    "get_environment_info",
]
