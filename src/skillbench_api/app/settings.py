"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "skillbench-api"
    app_env: str = "dev"
    log_level: str = "INFO"
    database_url: str = ""
    trial_execute_token: str = ""
    trial_orchestrator_url: str = ""
    trial_orchestrator_token: str = ""
    benchmark_run_mode: str = "sandbox"
    recommendation_default_limit: int = Field(default=3, ge=1, le=5)

    model_config = SettingsConfigDict(
        env_prefix="SKILLBENCH_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
