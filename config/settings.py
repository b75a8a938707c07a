"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Origin the offline cache controls (same-origin check)
    app_origin: str = "http://localhost:3000"

    # Backend API base URL (online users count endpoint lives here)
    api_url: str = "http://localhost:5000/api"

    # Offline cache settings
    # Bump the generation on every release; old generations are deleted on activate.
    cache_generation: str = "data-job-portal-v1"
    cache_backend: str = "memory"  # "memory" or "disk"
    cache_directory: Path = Path("./cache")
    precache_urls: List[str] = ["/", "/favicon.svg", "/manifest.json"]
    request_timeout_seconds: float = 10.0

    # Realtime presence
    realtime_enabled: bool = False
    presence_channel: str = "online-users"
    presence_poll_interval_seconds: float = 3.0
    # Shown instead of "0 online" while the first sync is pending
    presence_placeholder_count: int = 1247

    @property
    def online_users_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/users/online"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
