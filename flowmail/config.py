from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for the Redis mailer."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    queue: str = "flowmail:outbox"


class HttpMailerConfig(BaseModel):
    """Configuration for the SMTP gateway mailer."""

    url: str = "http://localhost:8787/send"
    token: Optional[str] = None
    timeout: float = 10.0


class MailerConfig(BaseModel):
    """Mail dispatch settings."""

    backend: Literal["inmemory", "redis", "http"] = "inmemory"
    redis: RedisConfig = Field(default_factory=RedisConfig)
    http: HttpMailerConfig = Field(default_factory=HttpMailerConfig)


class EngineSettings(BaseModel):
    """Retry, cycle and claim settings for the step executor and scanner."""

    max_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = 60.0
    retry_backoff_base: float = 2.0
    retry_jitter_seconds: float = 5.0
    max_steps_per_run: int = Field(default=100, ge=1)
    processing_timeout_seconds: float = 600.0
    dedupe_trigger_events: bool = True


class FlowmailConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    runner_token: Optional[str] = None
    team_notify_email: Optional[str] = None
    mailer: MailerConfig = Field(default_factory=MailerConfig)
    engine: EngineSettings = Field(default_factory=EngineSettings)


def load_config(path: Optional[str] = None) -> FlowmailConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWMAIL_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWMAIL_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowmailConfig(**data)
    else:
        config = FlowmailConfig()

    env_db_url = os.getenv("FLOWMAIL_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_mailer = os.getenv("FLOWMAIL_MAILER")
    if env_mailer:
        config.mailer.backend = env_mailer.lower()
    env_token = os.getenv("FLOWMAIL_RUNNER_TOKEN")
    if env_token:
        config.runner_token = env_token.strip()
    env_notify = os.getenv("TEAM_NOTIFY_EMAIL")
    if env_notify:
        config.team_notify_email = env_notify.strip()
    return config
