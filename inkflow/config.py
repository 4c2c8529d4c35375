from __future__ import annotations

import os
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_MAX_STEP_VISITS, WEBHOOK_TIMEOUT
from .utils.retry import RetryPolicy
from .webhooks import WebhookConfig


class InkflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    step_retry: RetryPolicy = Field(default_factory=RetryPolicy)
    webhook_timeout: float = WEBHOOK_TIMEOUT
    max_step_visits: int = Field(default=DEFAULT_MAX_STEP_VISITS, ge=1)
    webhooks: List[WebhookConfig] = Field(default_factory=list)


def load_config(path: Optional[str] = None) -> InkflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to INKFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("INKFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = InkflowConfig.model_validate(data)
    else:
        config = InkflowConfig()

    env_db_url = os.getenv("INKFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
