"""Application configuration."""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")

DEFAULT_API_BASE_URL = "https://api.fasterfoods.co.uk"
CACHE_FOLDER_NAME = "OfflineCache"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    api_base_url: str = DEFAULT_API_BASE_URL
    api_token: str | None = None
    request_timeout_seconds: float = 30.0
    shared_container_dir: str | None = None
    cache_dir: str | None = None
    cache_window_days: int = 14
    reachability_interval_seconds: float = 15.0
    reachability_timeout_seconds: float = 3.0
    log_level: str = "INFO"
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )


def normalize_base_url(raw: str | None) -> str:
    """Return an absolute API base URL, defaulting when blank."""
    if raw is None:
        return DEFAULT_API_BASE_URL
    cleaned = raw.strip().rstrip("/")
    if not cleaned:
        return DEFAULT_API_BASE_URL
    if "://" not in cleaned:
        return f"https://{cleaned}"
    return cleaned


def resolve_cache_dir(settings: Settings) -> Path:
    """Prefer the directory shared with app extensions, then the private one."""
    if settings.shared_container_dir:
        return Path(settings.shared_container_dir) / CACHE_FOLDER_NAME
    if settings.cache_dir:
        return Path(settings.cache_dir) / CACHE_FOLDER_NAME
    return Path.home() / ".fasterfoods" / CACHE_FOLDER_NAME
