"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    cloudflare_account_id: str = Field(..., alias="CLOUDFLARE_ACCOUNT_ID")
    cloudflare_api_token: str = Field(..., alias="CLOUDFLARE_API_TOKEN")
    workers_ai_model: str = Field(default="@cf/meta/llama-3.1-8b-instruct", alias="WORKERS_AI_MODEL")
    workers_ai_base_url: str = Field(
        default="https://api.cloudflare.com/client/v4",
        alias="WORKERS_AI_BASE_URL",
    )
    database_path: Path = Field(default=Path("sage.db"), alias="DATABASE_PATH")
    # Upper bound on inference calls per user turn.
    max_passes: int = Field(default=3, ge=1, alias="MAX_PASSES")
    max_tokens: int = Field(default=1024, ge=1, alias="MAX_TOKENS")
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT_SECONDS")
    history_window_messages: int = Field(default=50, alias="HISTORY_WINDOW_MESSAGES")
    scheduler_poll_interval_seconds: float = Field(default=1.0, alias="SCHEDULER_POLL_INTERVAL_SECONDS")
    search_timeout_seconds: float = Field(default=10.0, alias="SEARCH_TIMEOUT_SECONDS")
    conversation_id: str = Field(default="console", alias="CONVERSATION_ID")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()
