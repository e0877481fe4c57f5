"""Shared configuration utilities."""

import os
from typing import Optional


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def get_database_url() -> str:
    """Get the local store database URL from environment."""
    return get_env(
        "DATABASE_URL",
        "sqlite:///./offline_bible.db",
        required=False
    )


def get_bible_api_config() -> dict:
    """Get remote Bible content API configuration from environment."""
    return {
        "base_url": get_env("BIBLE_API_URL", "https://api.scripture.api.bible/v1"),
        "api_key": get_env("BIBLE_API_KEY", "demo-key"),
        "timeout": float(get_env("BIBLE_API_TIMEOUT", "30")),
        "chapter_delay": float(get_env("BIBLE_CHAPTER_DELAY", "0.1")),
    }


def get_sync_config() -> dict:
    """Get sync queue, connectivity and orchestrator settings from environment."""
    return {
        "reconnect_delay": float(get_env("SYNC_RECONNECT_DELAY", "1.0")),
        "simulated_delay": float(get_env("SYNC_SIMULATED_DELAY", "0.5")),
        "max_attempts": int(get_env("SYNC_MAX_ATTEMPTS", "5")),
        "backoff_base": float(get_env("SYNC_BACKOFF_BASE", "2.0")),
        "backoff_max": float(get_env("SYNC_BACKOFF_MAX", "300")),
        "lock_ttl": float(get_env("SYNC_LOCK_TTL", "300")),
        "remote_url": get_env("SYNC_API_URL"),
        "probe_url": get_env("CONNECTIVITY_PROBE_URL"),
        "probe_interval": float(get_env("CONNECTIVITY_PROBE_INTERVAL", "30")),
    }


def get_api_keys() -> set:
    """
    Get valid API keys for the HTTP surface from environment.

    Supports a comma-separated list in the API_KEYS environment variable.
    If not set, a default key is used for development.
    """
    api_keys_str = get_env("API_KEYS", "dev-api-key-12345")
    return set(key.strip() for key in api_keys_str.split(",") if key.strip())
