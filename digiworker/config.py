from __future__ import annotations

import os
from enum import Enum
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_CONTROL_ROOM_TOPIC,
    DEFAULT_DECISION_TIMEOUT,
    DEFAULT_DIGITAL_WORKER,
    DEFAULT_EMAIL_READ_COUNT,
    DEFAULT_STEP_DELAY,
)


class ApprovalPolicy(str, Enum):
    """When a successfully executed step must still be approved by an operator."""

    DECISION_ONLY = "decision_only"
    DECISION_OR_BLUEPRINT_ACTIONS = "decision_or_blueprint_actions"
    ALWAYS = "always"
    NEVER = "never"


class EngineConfig(BaseModel):
    step_delay: float = DEFAULT_STEP_DELAY
    decision_timeout: float = DEFAULT_DECISION_TIMEOUT
    approval_policy: ApprovalPolicy = ApprovalPolicy.DECISION_ONLY
    default_digital_worker: str = DEFAULT_DIGITAL_WORKER


class DecisionConfig(BaseModel):
    """Model used by the pydantic-ai backed decision service."""

    model: str = "google-gla:gemini-2.0-flash"


class ContentGenerationConfig(BaseModel):
    model: str = "gemini-2.0-flash-preview-image-generation"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    api_key: Optional[str] = None


class GmailConfig(BaseModel):
    access_token: Optional[str] = None
    base_url: str = "https://gmail.googleapis.com/gmail/v1/users/me"
    read_count: int = DEFAULT_EMAIL_READ_COUNT


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    topic: str = DEFAULT_CONTROL_ROOM_TOPIC


class DigiworkerConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    decision: DecisionConfig = DecisionConfig()
    content_generation: ContentGenerationConfig = ContentGenerationConfig()
    gmail: GmailConfig = GmailConfig()
    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> DigiworkerConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DIGIWORKER_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DIGIWORKER_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DigiworkerConfig(**data)
    else:
        config = DigiworkerConfig()

    env_db_url = os.getenv("DIGIWORKER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if gemini_key := os.getenv("GEMINI_API_KEY"):
        config.content_generation.api_key = gemini_key
    if gmail_token := os.getenv("GMAIL_ACCESS_TOKEN"):
        config.gmail.access_token = gmail_token
    return config
