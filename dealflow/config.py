from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_EVENTS_TOPIC,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BASE,
    DEFAULT_RETRY_JITTER,
    DEFAULT_SCHEDULER_BATCH_SIZE,
    DEFAULT_SCHEDULER_INTERVAL,
    DEFAULT_STEP_MAX_ATTEMPTS,
    DEFAULT_WEBHOOK_TIMEOUT,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = DEFAULT_EVENTS_TOPIC
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Backoff policy for transient action failures and required steps."""

    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    base: float = DEFAULT_RETRY_BASE
    jitter: float = DEFAULT_RETRY_JITTER
    step_max_attempts: int = DEFAULT_STEP_MAX_ATTEMPTS


class WebhookConfig(BaseModel):
    timeout: float = DEFAULT_WEBHOOK_TIMEOUT


class SchedulerConfig(BaseModel):
    """Polling scheduler settings."""

    interval: float = DEFAULT_SCHEDULER_INTERVAL
    batch_size: int = DEFAULT_SCHEDULER_BATCH_SIZE


class TemplateConfig(BaseModel):
    """How unresolved ``{{ placeholders }}`` are rendered."""

    undefined: Literal["empty", "strict"] = "empty"


class DealflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    retry: RetryConfig = RetryConfig()
    webhook: WebhookConfig = WebhookConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    templates: TemplateConfig = TemplateConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> DealflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DEALFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DEALFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DealflowConfig(**data)
    else:
        config = DealflowConfig()

    env_db_url = os.getenv("DEALFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("DEALFLOW_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport  # type: ignore[assignment]
    env_log_level = os.getenv("DEALFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level
    return config
