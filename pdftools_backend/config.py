"""
Configuration and settings for the PDF tools backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_prefix: str = Field(default="/api")

    # Document store (MongoDB expected, any SQLAlchemy URL also accepted)
    # MONGO_URI is the name the earlier Node deployment used.
    database_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("DATABASE_URL", "MONGO_URI")
    )
    database_name: str = Field(default="pdftools")
    db_connect_timeout_ms: int = Field(default=30000)
    db_socket_timeout_ms: int = Field(default=45000)
    db_probe_timeout_ms: int = Field(default=2000)

    # Auth
    jwt_secret: Optional[str] = Field(default=None)
    jwt_expire_minutes: int = Field(default=60 * 24)
    bcrypt_rounds: int = Field(default=10, ge=4, le=31)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, validation_alias="PDFTOOLS_USE_IN_MEMORY_BACKENDS"
    )

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5000)
    log_level: str = Field(default="INFO")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Bundled frontend
    serve_static: bool = Field(default=False)
    static_dir: str = Field(default="client/build")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
