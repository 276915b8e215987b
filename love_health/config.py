"""
Configuration and settings for the love_health backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_prefix: str = Field(default="/api/v1")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Database (MySQL/Postgres in production, SQLite for local runs and tests)
    database_url: str = Field(default="sqlite+pysqlite:///./love_health.db")
    db_pool_size: int = Field(default=10)
    db_max_overflow: int = Field(default=0)
    db_pool_timeout: float = Field(default=30.0)
    db_echo: bool = Field(default=False)

    # Bearer tokens
    jwt_secret: str = Field(default="love_health_secret_key")
    jwt_algorithm: str = Field(default="HS256")
    jwt_expires_in: int = Field(default=24 * 3600)
    jwt_refresh_expires_in: int = Field(default=7 * 24 * 3600)

    bcrypt_rounds: int = Field(default=10)

    # S3-compatible storage (MinIO)
    s3_endpoint: Optional[str] = Field(default=None)
    s3_region: str = Field(default="us-east-1")
    s3_access_key_id: Optional[str] = Field(default=None)
    s3_secret_access_key: Optional[str] = Field(default=None)
    s3_public_bucket: str = Field(default="lovehealth-public")
    s3_private_bucket: str = Field(default="lovehealth-private")
    s3_public_base_url: Optional[str] = Field(default=None)

    # Cache (Redis)
    redis_url: Optional[str] = Field(default=None)
    cache_prefix: str = Field(default="love_health:")
    profile_cache_ttl: int = Field(default=300)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, validation_alias="LOVE_HEALTH_USE_IN_MEMORY_BACKENDS"
    )

    cors_origins: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "capacitor://localhost",
            "http://localhost",
        ]
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
