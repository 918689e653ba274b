from __future__ import annotations

import os
from datetime import timedelta
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .retry import RetryPolicy


class RedisConfig(BaseModel):
    """Connection settings for the Redis instance cache."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class CacheConfig(BaseModel):
    """Read-through cache settings."""

    backend: Literal["none", "memory", "redis"] = "none"
    ttl: float = 30.0
    redis: RedisConfig = RedisConfig()


class EngineSettings(BaseModel):
    """Scheduler settings shared by every instance."""

    default_timeout: Optional[float] = None
    max_concurrent_instances: int = Field(default=16, ge=1)
    retention: Optional[timedelta] = Field(
        default=None,
        description="How long finished instances are kept before a purge removes them",
    )


class ProcflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    definitions_path: Optional[str] = None
    cache: CacheConfig = CacheConfig()
    retry: RetryPolicy = RetryPolicy()
    engine: EngineSettings = EngineSettings()


def load_config(path: Optional[str] = None) -> ProcflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PROCFLOW_CONFIG env
            variable or 'procflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("PROCFLOW_CONFIG", "procflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ProcflowConfig(**data)
    else:
        config = ProcflowConfig()

    env_db_url = os.getenv("PROCFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
