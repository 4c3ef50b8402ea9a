"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WORKER_SECRET = "change-me-in-production"


class Settings(BaseSettings):
    """DocSync application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/docsync.db"

    # Paths
    mirrors_dir: Path = Path("./data/mirrors")

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    # Worker
    worker_secret: str = DEFAULT_WORKER_SECRET
    worker_autostart: bool = False
    worker_interval_seconds: float = Field(default=60.0, gt=0)
    auto_push_new_features: bool = False

    # External tracker
    tracker_type: Literal["github", "azure-devops"] = "github"
    tracker_base_url: str = "https://api.github.com"
    tracker_project: str = ""
    tracker_token: str = ""
    tracker_timeout_seconds: float = Field(default=15.0, gt=0)
    tracker_max_attempts: int = Field(default=4, ge=1, le=10)
    tracker_backoff_seconds: float = Field(default=1.0, ge=0)

    # Content source
    git_timeout_seconds: float = Field(default=120.0, gt=0)

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.worker_secret == DEFAULT_WORKER_SECRET or len(self.worker_secret) < 32:
            violations.append(
                "WORKER_SECRET must be overridden with a high-entropy value (>=32 chars)"
            )
        if not self.tracker_token:
            violations.append("TRACKER_TOKEN must be configured in production")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
