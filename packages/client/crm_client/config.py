"""
Configuration loading and validation.

Loads client configuration from a YAML file. Tokens are never stored in the
config file; they live in the token store (``state.db_path``).
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator


class ServerConfig(BaseModel):
    url: str = "http://localhost:8000"
    verify_tls: bool = True
    request_timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    @field_validator("url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.rstrip("/")


class StateConfig(BaseModel):
    db_path: str = "./data/crm_client.db"


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "text"


class ClientConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str | Path) -> ClientConfig:
    """Load and validate client configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return ClientConfig.model_validate(raw)
