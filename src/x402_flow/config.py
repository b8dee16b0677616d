"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. Both the facilitator service
and the payment flow engine pull their defaults from here; the engine gets
them through FlowConfig.from_settings() so a running session never reads
globals mid-flight.

Usage:
    from x402_flow.config import get_settings
    settings = get_settings()
    print(settings.facilitator_url)
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for x402-flow."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="X402_",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_log_level: str = "INFO"

    # --- Facilitator service ---
    facilitator_host: str = "127.0.0.1"
    facilitator_port: int = 3001
    facilitator_url: str = "http://localhost:3001"
    network: str = "testnet"
    facilitator_wallet: str = ""
    facilitator_private_key: str = ""
    pid_file: str = "~/.x402/facilitator.pid"
    settlement_delay_seconds: float = 0.0
    shutdown_grace_seconds: float = 10.0

    # --- Wallet ---
    wallet_path: str = ""

    # --- Payment flow engine ---
    resource_timeout_seconds: float = 10.0
    submit_timeout_seconds: float = 10.0
    status_timeout_seconds: float = 5.0
    settlement_deadline_seconds: float = 30.0
    poll_interval_seconds: float = 0.5
    submit_max_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    retry_backoff_max_seconds: float = 4.0

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def pid_file_path(self) -> Path:
        """Expanded location of the facilitator pid file."""
        return Path(self.pid_file).expanduser()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
