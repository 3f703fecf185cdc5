"""Configuration management utilities for the budget analytics tools.

Provides:
- Config: base class exposing settings as a plain dict
- AppConfig: application settings loaded from environment variables
"""

import os as _os
from pathlib import Path
from typing import Dict, Any


class Config:
    """Base configuration class for organizing application settings."""

    def __init__(self):
        """Initialize configuration with default values."""
        pass

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary.

        Returns:
            Dictionary of all config attributes
        """
        return {k: v for k, v in self.__dict__.items() if not k.startswith("_")}


def _env_int(name: str, default: int) -> int:
    raw = _os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = _os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


class AppConfig(Config):
    """Application-level configuration loaded from environment variables.

    All env vars have sensible defaults so the application works out of the
    box without any configuration.

    Environment variables:
        APP_DB_PATH: Path to the SQLite database file (default: budget.sqlite)
        APP_PORT: API server port (default: 8000)
        APP_HOST: API server bind address (default: 127.0.0.1)
        APP_LOG_FORMAT: Logging format, "text" or "json" (default: text)
        ANALYTICS_CACHE_MAX_ITEMS: Max cached aggregate results (default: 10000)
        ANALYTICS_CACHE_MAX_BYTES: Max cumulative cached bytes (default: 100 MiB)
        ANALYTICS_CACHE_TTL_SECONDS: Seconds a cached result lives (default: 3600)
        ANALYTICS_QUERY_TIMEOUT_SECONDS: Storage deadline per aggregation (default: 30)
        ANALYTICS_MAX_WORKERS: Thread pool size for storage calls (default: 8)
        ANALYTICS_EUR_RATES_PATH: Optional JSON file overriding RON/EUR rates
    """

    def __init__(self) -> None:
        super().__init__()
        self.db_path = Path(_os.getenv("APP_DB_PATH", "budget.sqlite"))
        self.api_port = _env_int("APP_PORT", 8000)
        self.api_host = _os.getenv("APP_HOST", "127.0.0.1")
        self.log_format = _os.getenv("APP_LOG_FORMAT", "text")
        self.cache_max_items = _env_int("ANALYTICS_CACHE_MAX_ITEMS", 10_000)
        self.cache_max_bytes = _env_int("ANALYTICS_CACHE_MAX_BYTES", 100 * 1024 * 1024)
        self.cache_ttl_seconds = _env_float("ANALYTICS_CACHE_TTL_SECONDS", 3600.0)
        self.query_timeout_seconds = _env_float("ANALYTICS_QUERY_TIMEOUT_SECONDS", 30.0)
        self.max_workers = _env_int("ANALYTICS_MAX_WORKERS", 8)
        raw_rates = _os.getenv("ANALYTICS_EUR_RATES_PATH", "").strip()
        self.eur_rates_path: Path | None = Path(raw_rates) if raw_rates else None

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create an AppConfig instance populated from environment variables."""
        return cls()
