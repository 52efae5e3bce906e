from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


@dataclass(frozen=True)
class Config:
    """Central configuration loaded from environment variables."""

    # Database
    db_path: Path = field(
        default_factory=lambda: Path(
            os.environ.get("CREWLEASE_DB_PATH", "data/crewlease.db")
        )
    )

    # Leases
    lease_stale_seconds: int = field(
        default_factory=lambda: _env_int("CREWLEASE_LEASE_STALE_SECONDS", 1800)
    )
    sweep_interval: int = field(
        default_factory=lambda: _env_int("CREWLEASE_SWEEP_INTERVAL", 60)
    )

    # Role agents
    poll_interval: int = field(
        default_factory=lambda: _env_int("CREWLEASE_POLL_INTERVAL", 5)
    )
    max_concurrent_developers: int = field(
        default_factory=lambda: _env_int("CREWLEASE_MAX_CONCURRENT_DEVELOPERS", 1)
    )

    # Messaging
    message_max_retries: int = field(
        default_factory=lambda: _env_int("CREWLEASE_MESSAGE_MAX_RETRIES", 3)
    )
    message_retry_base_seconds: int = field(
        default_factory=lambda: _env_int("CREWLEASE_MESSAGE_RETRY_BASE_SECONDS", 60)
    )
    message_claim_timeout_seconds: int = field(
        default_factory=lambda: _env_int("CREWLEASE_MESSAGE_CLAIM_TIMEOUT_SECONDS", 300)
    )
    dead_letter_retention_days: int = field(
        default_factory=lambda: _env_int("CREWLEASE_DEAD_LETTER_RETENTION_DAYS", 30)
    )

    # Reasoning agent
    claude_executable: str = field(
        default_factory=lambda: os.environ.get("CREWLEASE_CLAUDE_EXECUTABLE", "claude")
    )
    working_dir: Path = field(
        default_factory=lambda: Path(os.environ.get("CREWLEASE_WORKING_DIR", os.getcwd()))
    )
    agent_timeout: int = field(
        default_factory=lambda: _env_int("CREWLEASE_AGENT_TIMEOUT", 300)
    )
    anthropic_api_key: str | None = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY")
    )
    model: str = field(
        default_factory=lambda: os.environ.get("CREWLEASE_MODEL", "claude-sonnet-4-20250514")
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.environ.get("CREWLEASE_LOG_LEVEL", "INFO")
    )


def get_config() -> Config:
    """Return a Config instance built from the current environment."""
    return Config()
