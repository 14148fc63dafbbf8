"""Environment-driven settings and logging setup for the API and CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

MLBB_API_BASE_URL = "https://mlbb-stats.ridwaanhall.com/api"
DEFAULT_AI_MODEL = "claude-sonnet-4-20250514"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read once at startup."""

    port: int = 3001
    scrape_secret: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    api_base_url: str = MLBB_API_BASE_URL
    fetch_timeout: float = 15.0
    refresh_interval: int = 3600
    cache_ttl: int = 3600
    rate_limit_requests: int = 60
    rate_limit_window: int = 60
    rate_limit_sweep: int = 300
    ai_model: str = DEFAULT_AI_MODEL
    ai_timeout: float = 30.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "Settings":
        """Build settings from the process environment (and `.env` when present)."""
        if dotenv:
            load_dotenv()
        return cls(
            port=int(os.getenv("PORT", "3001")),
            scrape_secret=_optional("SCRAPE_SECRET"),
            anthropic_api_key=_optional("ANTHROPIC_API_KEY"),
            api_base_url=os.getenv("MLBB_API_BASE_URL", MLBB_API_BASE_URL).rstrip("/"),
            fetch_timeout=float(os.getenv("MLBB_FETCH_TIMEOUT", "15")),
            refresh_interval=int(os.getenv("MLBB_REFRESH_INTERVAL", "3600")),
            cache_ttl=int(os.getenv("MLBB_CACHE_TTL", "3600")),
            rate_limit_requests=int(os.getenv("MLBB_RATE_LIMIT_REQUESTS", "60")),
            rate_limit_window=int(os.getenv("MLBB_RATE_LIMIT_WINDOW", "60")),
            rate_limit_sweep=int(os.getenv("MLBB_RATE_LIMIT_SWEEP", "300")),
            ai_model=os.getenv("MLBB_AI_MODEL", DEFAULT_AI_MODEL),
            ai_timeout=float(os.getenv("MLBB_AI_TIMEOUT", "30")),
            log_level=os.getenv("MLBB_LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Apply the shared log format to the root logger."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
