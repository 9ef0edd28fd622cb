"""Application configuration helpers."""

import logging
import os
import secrets
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "http://localhost:8000/api"


class ConfigError(RuntimeError):
    """Raised when a configuration value cannot be used."""


@dataclass(frozen=True)
class Settings:
    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout: float = 30.0
    history_poll_interval: float = 10.0
    history_limit: int = 100
    database_url: str = ""
    session_secret_key: str = ""
    server_port: int = 8080
    session_idle_timeout: float = 1800.0


def _get_number_env(name: str, default: str, cast):
    raw = os.getenv(name) or default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be numeric, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    api_base_url = (os.getenv("REPUTATION_API_BASE_URL") or DEFAULT_API_BASE_URL).strip().rstrip("/")
    request_timeout = _get_number_env("REPUTATION_API_TIMEOUT", "30", float)
    history_poll_interval = _get_number_env("HISTORY_POLL_INTERVAL", "10", float)
    history_limit = _get_number_env("HISTORY_LIMIT", "100", int)
    database_url = os.getenv("DATABASE_URL", "")
    session_secret_key = os.getenv("SESSION_SECRET_KEY", "")
    server_port = _get_number_env("PORT", "8080", int)
    session_idle_timeout = _get_number_env("SESSION_IDLE_TIMEOUT", "1800", float)

    if not database_url:
        logger.warning("DATABASE_URL is not set; session state is kept in process memory.")
    if not session_secret_key:
        logger.warning("SESSION_SECRET_KEY is not configured; sessions will not survive a restart.")
        session_secret_key = secrets.token_hex(32)

    return Settings(
        api_base_url=api_base_url,
        request_timeout=request_timeout,
        history_poll_interval=history_poll_interval,
        history_limit=history_limit,
        database_url=database_url,
        session_secret_key=session_secret_key,
        server_port=server_port,
        session_idle_timeout=session_idle_timeout,
    )
