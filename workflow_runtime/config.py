from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport used to publish domain events."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class PersistenceConfig(BaseModel):
    strict_payloads: bool = Field(
        default=True,
        description="Raise on malformed stored JSON instead of falling back to empty values",
    )


class HandlerConfig(BaseModel):
    """Retry policy applied at the handler boundary."""

    max_conflict_retries: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.05, ge=0)
    retry_factor: float = Field(default=2.0, ge=1)
    retry_jitter: float = Field(default=0.05, ge=0)
    max_instance_retries: int = Field(default=3, ge=0)


class DispatchConfig(BaseModel):
    max_publish_attempts: int = Field(default=3, ge=1)


class SweeperConfig(BaseModel):
    interval: float = Field(default=60.0, gt=0)
    batch_limit: int = Field(default=100, ge=1)
    sla_action: Literal["fail", "report"] = "fail"


class RuntimeConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    persistence: PersistenceConfig = PersistenceConfig()
    handlers: HandlerConfig = HandlerConfig()
    dispatch: DispatchConfig = DispatchConfig()
    sweeper: SweeperConfig = SweeperConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> RuntimeConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to the
            WORKFLOW_RUNTIME_CONFIG env variable or 'config.yaml' in the
            current directory.
    """

    config_path = path or os.getenv("WORKFLOW_RUNTIME_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RuntimeConfig(**data)
    else:
        config = RuntimeConfig()

    env_db_url = os.getenv("WORKFLOW_RUNTIME_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
