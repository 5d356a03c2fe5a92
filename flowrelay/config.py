from __future__ import annotations

import logging
import os
from typing import Optional

import yaml
from pydantic import BaseModel


class RunnerConfig(BaseModel):
    """Settings for the orchestrator runner."""

    lease_seconds: float = 300.0
    lease_wait_attempts: int = 5
    lease_wait_delay: int = 200  # ms
    http_timeout: int = 30000  # ms


class LocalFlowConfig(BaseModel):
    """Where local sub-flows are served."""

    base_url: str = "http://localhost:3000/api/v1"


class LoggingConfig(BaseModel):
    level: str = "INFO"


class FlowRelayConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    runner: RunnerConfig = RunnerConfig()
    local_flow: LocalFlowConfig = LocalFlowConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Optional[str] = None) -> FlowRelayConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWRELAY_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWRELAY_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowRelayConfig(**data)
    else:
        config = FlowRelayConfig()

    env_db_url = os.getenv("FLOWRELAY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config


def configure_logging(config: FlowRelayConfig) -> None:
    """Configure process logging for command line use."""
    logging.basicConfig(
        level=config.logging.level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
