from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Live event stream settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    max_subscribers: int = Field(default=64, ge=1)
    queue_size: int = Field(default=256, ge=1)


class EngineConfig(BaseModel):
    """Workflow engine settings."""

    admin_role: str = "admin"
    system_actor: str = "system"


class NotificationConfig(BaseModel):
    """Notification delivery settings."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=1.5, gt=0)
    webhook_url: Optional[str] = None
    webhook_timeout: float = 10.0


class RatifyConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    notifications: NotificationConfig = NotificationConfig()
    # company id -> role -> active user ids
    roster: Dict[str, Dict[str, List[str]]] = Field(default_factory=dict)
    roster_cache_ttl: Optional[float] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> RatifyConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to RATIFY_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("RATIFY_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RatifyConfig(**data)
    else:
        config = RatifyConfig()

    env_db_url = os.getenv("RATIFY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
