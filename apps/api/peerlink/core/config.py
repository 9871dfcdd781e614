"""Application configuration for the signaling service."""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")

    jwt_secret: str = Field(default="peerlink-development-secret-change-before-deploying")
    jwt_algorithm: str = Field(default="HS256")
    token_role: str = Field(default="employee")
    token_ttl_seconds: int = Field(default=3600, ge=1)

    # 0 means unbounded.
    outbound_queue_size: int = Field(default=0, ge=0)
    signaling_notify_on_leave: bool = Field(default=False)

    ice_servers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["stun:stun.l.google.com:19302"])

    @field_validator("cors_allow_origins", "ice_servers", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
