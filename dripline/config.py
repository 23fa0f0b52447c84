from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_STALE_AFTER,
)


class RetryConfig(BaseModel):
    """Retry policy for transient collaborator failures."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = 1.5
    backoff_jitter: float = 0.5


class EngineConfig(BaseModel):
    """Execution engine settings."""

    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    stale_after: float = DEFAULT_STALE_AFTER
    retry: RetryConfig = RetryConfig()


class EmailConfig(BaseModel):
    """Email collaborator settings."""

    backend: Literal["log", "http"] = "log"
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    sender: str = "no-reply@localhost"
    timeout: float = 10.0


class DriplineConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    email: EmailConfig = EmailConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> DriplineConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DRIPLINE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DRIPLINE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DriplineConfig(**data)
    else:
        config = DriplineConfig()

    env_db_url = os.getenv("DRIPLINE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
