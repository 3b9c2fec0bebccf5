"""
Configuration and Settings Management

This module handles all application configuration using Pydantic Settings
with support for environment variables and 12-Factor App principles.
"""

import logging
import re
import secrets
import sys
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

# =============================================================================
# Base Directories
# =============================================================================

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()

# =============================================================================
# Core Application Settings
# =============================================================================

class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    All settings can be overridden via environment variables.
    """

    # =========================================================================
    # Application Core
    # =========================================================================

    APP_NAME: str = "Citizen Alerts"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Citizen incident reporting with geolocated proofs"

    ENVIRONMENT: Literal["development", "testing", "staging", "production"] = "development"
    DEBUG: bool = Field(default=False, description="Debug mode")

    # API Configuration
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: List[str] = Field(
        default=["*"],
        description="Allowed CORS origins"
    )
    SHOW_DOCS: bool = Field(default=True, description="Show API documentation")

    # =========================================================================
    # Security
    # =========================================================================

    # Shared with the identity provider that signs citizen tokens
    SECRET_KEY: str = Field(
        default_factory=lambda: secrets.token_urlsafe(32),
        description="Secret used to verify citizen JWTs"
    )
    JWT_ALGORITHM: str = Field(default="HS256", description="Citizen JWT signing algorithm")

    # Service-to-service webhook secret (x-service-key header)
    SERVICE_API_KEY: Optional[str] = Field(
        default=None,
        description="Shared secret expected from downstream services"
    )

    # =========================================================================
    # Database Configuration (PostgreSQL + PostGIS)
    # =========================================================================

    POSTGRES_HOST: str = Field(default="localhost", description="PostgreSQL host")
    POSTGRES_PORT: int = Field(default=5432, description="PostgreSQL port")
    POSTGRES_DB: str = Field(default="citizen_alerts", description="Database name")
    POSTGRES_USER: str = Field(default="postgres", description="Database user")
    POSTGRES_PASSWORD: str = Field(default="postgres", description="Database password")

    # Connection pool settings
    DATABASE_POOL_SIZE: int = Field(default=10, description="Database connection pool size")
    DATABASE_MAX_OVERFLOW: int = Field(default=20, description="Max overflow connections")
    DATABASE_POOL_TIMEOUT: int = Field(default=30, description="Pool timeout in seconds")
    DATABASE_ECHO: bool = Field(default=False, description="Echo SQL queries")

    # Computed database URL (will be set by model_validator)
    DATABASE_URL: Optional[str] = None

    @model_validator(mode='after')
    def assemble_database_url(self) -> 'Settings':
        # Respect explicit DATABASE_URL from environment if provided
        url = self.DATABASE_URL
        if not url:
            url = (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )
        # Normalize common URL schemes to SQLAlchemy async driver
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        object.__setattr__(self, "DATABASE_URL", url)
        return self

    # =========================================================================
    # Proof Storage Configuration
    # =========================================================================

    UPLOAD_DIR: Path = Field(default=PROJECT_ROOT / "uploads")
    UPLOAD_URL_PREFIX: str = Field(default="/uploads", description="Public mount point of UPLOAD_DIR")
    MAX_FILE_SIZE_MB: int = Field(default=50, description="Max file size in MB")
    MAX_FILES_PER_REQUEST: int = Field(default=5, description="Max files in one multi-upload")
    ALLOWED_FILE_TYPES: List[str] = Field(
        default=[
            "image/jpeg", "image/png", "image/gif", "image/webp",
            "video/mp4", "video/quicktime", "video/x-msvideo", "video/webm",
            "audio/mpeg", "audio/wav", "audio/ogg", "audio/webm",
        ],
        description="Allowed MIME types for uploads"
    )

    # Media processing
    FFMPEG_BINARY: str = Field(default="ffmpeg", description="ffmpeg executable used for video frames")
    VIDEO_THUMBNAIL_TIMEOUT_SECONDS: float = Field(default=30.0)
    PROOF_PROCESSING_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Base timeout for processing all proofs of one alert"
    )
    PROOF_PROCESSING_TIMEOUT_PER_FILE_SECONDS: float = Field(
        default=30.0,
        description="Additional timeout granted per uploaded file"
    )

    # =========================================================================
    # Business Logic Configuration
    # =========================================================================

    NEARBY_DEFAULT_DISTANCE_METERS: int = Field(default=5000)
    DEFAULT_ALERT_STATUS: str = Field(default="pending")

    # =========================================================================
    # Logging and Monitoring
    # =========================================================================

    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: Literal["json", "pretty"] = Field(default="json")
    METRICS_ENABLED: bool = Field(default=True)

    # =========================================================================
    # Development
    # =========================================================================

    AUTO_RELOAD: bool = Field(default=False)

    # =========================================================================
    # Validation and Post-Processing
    # =========================================================================

    @field_validator('CORS_ORIGINS', mode='before')
    def assemble_cors_origins(cls, v: Any) -> List[str]:
        """Parse CORS origins from string or list."""
        if isinstance(v, str) and not v.startswith('['):
            return [i.strip() for i in v.split(',')]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(f"Invalid CORS_ORIGINS: {v}")

    @field_validator('UPLOAD_URL_PREFIX')
    def normalize_upload_prefix(cls, v: str) -> str:
        return "/" + v.strip("/")

    @model_validator(mode='after')
    def validate_service_key(self) -> 'Settings':
        """Refuse to run production without a webhook secret."""
        if self.ENVIRONMENT == "production" and not self.SERVICE_API_KEY:
            raise ValueError("SERVICE_API_KEY is required in production")
        return self

    # =========================================================================
    # Environment-specific configurations
    # =========================================================================

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT == "production"

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def MAX_FILE_SIZE_BYTES(self) -> int:
        return self.MAX_FILE_SIZE_MB * 1024 * 1024

    @property
    def DATABASE_ENGINE_OPTIONS(self) -> Dict[str, Any]:
        """Database engine configuration options."""
        return {
            "pool_size": self.DATABASE_POOL_SIZE,
            "max_overflow": self.DATABASE_MAX_OVERFLOW,
            "pool_timeout": self.DATABASE_POOL_TIMEOUT,
            "echo": self.DATABASE_ECHO and not self.is_production,
            "pool_pre_ping": True,  # Validate connections before use
            "pool_recycle": 3600,   # Recycle connections every hour
        }

    # =========================================================================
    # Model Configuration
    # =========================================================================

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "validate_assignment": True,
        "extra": "ignore",
    }


# =============================================================================
# Settings Instance and Cache
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    This function is cached to avoid re-parsing environment variables
    on every call.
    """
    return Settings()


# Convenience alias for global access
settings = get_settings()


# =============================================================================
# Logging Configuration
# =============================================================================

SENSITIVE_KEYS = {"authorization", "token", "api_key", "password", "secret", "x-service-key"}
TOKEN_PATTERN = re.compile(r"(eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]+)")


def redact_secrets(_, __, event_dict):
    """structlog processor removing bearer tokens and configured secrets."""
    for key, value in list(event_dict.items()):
        if isinstance(value, str):
            event_dict[key] = TOKEN_PATTERN.sub("***REDACTED***", value)
        elif isinstance(value, dict):
            for k in list(value.keys()):
                if isinstance(k, str) and k.lower() in SENSITIVE_KEYS:
                    value[k] = "***REDACTED***"
    for sensitive in ("SECRET_KEY", "SERVICE_API_KEY", "POSTGRES_PASSWORD"):
        if sensitive in event_dict:
            event_dict[sensitive] = "***REDACTED***"
    return event_dict


def setup_logging() -> None:
    """Configure structured logging for the application."""
    import structlog

    # Ensure exc_info=True is attached when logging inside an exception block
    def _ensure_exc_info_processor(logger, method_name, event_dict):
        if event_dict.get("exc_info"):
            return event_dict
        if method_name in ("error", "exception", "critical"):
            if sys.exc_info()[0] is not None:
                event_dict["exc_info"] = True
        return event_dict

    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _ensure_exc_info_processor,
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.LOG_FORMAT == "pretty"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=level,
        format="%(message)s" if settings.LOG_FORMAT == "json" else None,
    )

    # Suppress noisy loggers in production
    if settings.is_production:
        logging.getLogger("uvicorn").setLevel(logging.WARNING)
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
        logging.getLogger("PIL").setLevel(logging.WARNING)


# =============================================================================
# Development Helpers
# =============================================================================

if __name__ == "__main__":
    # Print current configuration for debugging
    import json

    config_dict = settings.model_dump()

    for field in ("SECRET_KEY", "SERVICE_API_KEY", "POSTGRES_PASSWORD", "DATABASE_URL"):
        if field in config_dict:
            config_dict[field] = "***REDACTED***"

    print(json.dumps(config_dict, indent=2, default=str))
