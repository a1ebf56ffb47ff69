import os
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_workers() -> int:
    return min(8, os.cpu_count() or 1)


class AppSettings(BaseSettings):
    """
    Application configuration loaded from Environment Variables or .env file.
    Command line flags take precedence over these values.
    """

    BACKEND: str = "docker"  # docker | podman
    DOCKER_BASE_URL: str | None = None  # Optional: Connect to remote docker
    PODMAN_BASE_URL: str = "unix:///run/podman/podman.sock"

    MAX_WORKERS: int = _default_workers()
    STOP_TIMEOUT: int = 5
    DEADLINE: float | None = None  # Optional: overall deadline for one command, in seconds

    LOG_LEVEL: str = "WARNING"

    model_config = SettingsConfigDict(env_prefix="POD_COMPOSE_", env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> AppSettings:
    """
    Creates a singleton instance of AppSettings.
    Uses lru_cache to ensure the .env file is read only once.
    """
    return AppSettings()
