#!/usr/bin/env python3
"""
Centralised application settings (AppSettings)

- One place for logging, concurrency and progress tuning knobs
- Loaded from environment variables, with ``.env`` support
- Cached through ``get_settings()`` so every component sees the same values
"""
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Logging
    log_level: str = Field(default="INFO")
    # json|plain
    log_format: str = Field(default="json")

    # Mutation lane: seconds a single validation may take before it is failed
    mutation_validation_timeout: float = Field(default=5.0, gt=0)
    # Seconds a request may wait behind other mutations of the same plan (0 = unbounded)
    mutation_queue_timeout: float = Field(default=30.0, ge=0)
    validation_workers: int = Field(default=4, ge=1)

    # Sync broadcaster
    broadcast_buffer_size: int = Field(default=256, ge=1)
    broadcast_heartbeat_seconds: float = Field(default=15.0, gt=0)

    # Progress
    progress_history_limit: int = Field(default=30, ge=1)
    velocity_window_days: int = Field(default=30, ge=1)
    # Whether a skipped prerequisite unblocks its dependents
    skipped_satisfies_dependencies: bool = Field(default=True)

    # Server
    backend_host: str = Field(default="0.0.0.0")
    backend_port: int = Field(default=9000)
    cors_origins: str = Field(default="http://localhost:3000")
    api_debug: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return the cached application settings."""
    return AppSettings()
