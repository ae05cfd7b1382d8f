"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "blackroad-tasks"
    app_debug: bool = False
    # Empty means the in-memory task store.
    database_url: str = ""
    notify_max_retries: int = Field(default=2, ge=0)
    notify_backoff_s: float = Field(default=0.0, ge=0.0)
    notify_gap_timeout_s: float = Field(default=5.0, ge=0.0)
    notify_max_tracked_tasks: int = Field(default=10_000, ge=1)
    webhook_timeout_s: float = Field(default=5.0, ge=0.1)
    # agent_id -> credential; empty accepts every agent.
    agent_tokens: dict[str, str] = Field(default_factory=dict)

    model_config = SettingsConfigDict(
        env_prefix="BLACKROAD_TASKS_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("BLACKROAD_DATABASE_URL", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
