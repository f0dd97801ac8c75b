"""Configuration utilities for the desktop companion."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_API_BASE_URL = "https://track-app-backend-flame.vercel.app/api"
DEFAULT_REQUEST_TIMEOUT = 5.0
DEFAULT_PROBE_TIMEOUT = 3.0
DEFAULT_STORAGE_PATH = Path.home() / ".minetrack" / "minetrack.db"
DEFAULT_TICK_INTERVAL_MS = 1000


class AppConfig(BaseSettings):
    """Runtime configuration for the client."""

    model_config = SettingsConfigDict(env_prefix="MINETRACK_", case_sensitive=False, extra="ignore")

    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    storage_path: Path = DEFAULT_STORAGE_PATH
    tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS
    log_level: str = "INFO"

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("request_timeout", "probe_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value


def load_config() -> AppConfig:
    """Load the configuration, honouring an optional `.env` file next to the package."""

    env_path = Path(__file__).resolve().parent.parent / ".env"
    if env_path.exists():
        load_dotenv(env_path)
    return AppConfig()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


__all__ = ["AppConfig", "configure_logging", "load_config"]
