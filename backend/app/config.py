from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Parley API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")
    log_level: str = Field(default="INFO", env="LOG_LEVEL", description="Root log level")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    database_url: str = Field(default="sqlite+pysqlite:///./parley.db", env="DATABASE_URL")
    database_auto_create: bool = Field(
        default=True,
        env="DATABASE_AUTO_CREATE",
        description="Create missing tables on startup.",
    )

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    chat_message_max_length: int = Field(default=2000, env="CHAT_MESSAGE_MAX_LENGTH")

    websocket_keepalive_timeout_seconds: float = Field(
        default=30.0,
        env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS",
        description="Idle period after which the server checks the socket and may ping.",
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=30.0,
        env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS",
        description="Minimum spacing between keepalive pings on an idle socket.",
    )

    realtime_reaper_interval_seconds: float = Field(
        default=30.0,
        env="REALTIME_REAPER_INTERVAL_SECONDS",
        description="How often stale sessions are swept.",
    )
    realtime_outbound_queue_size: int = Field(
        default=256,
        env="REALTIME_OUTBOUND_QUEUE_SIZE",
        description="Events buffered per session before new ones are dropped.",
    )
    realtime_inbound_queue_size: int = Field(
        default=64,
        env="REALTIME_INBOUND_QUEUE_SIZE",
        description="Inbound events buffered per session before the reader waits.",
    )
    realtime_drain_timeout_seconds: float = Field(
        default=5.0,
        env="REALTIME_DRAIN_TIMEOUT_SECONDS",
        description="Upper bound for processing queued events of a closing session.",
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v is None:
            return []
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return str(value).strip().upper() or "INFO"

    @field_validator(
        "realtime_outbound_queue_size",
        "realtime_inbound_queue_size",
    )
    @classmethod
    def positive_queue_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Queue sizes must be at least 1")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
