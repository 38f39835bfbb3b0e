"""Configuration management for the worker."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .errors import ConfigurationError

LOG_LEVELS = ("trace", "debug", "info", "warn", "error")
_LOG_LEVEL_ALIASES = {"warning": "warn", "critical": "error", "fatal": "error"}


def default_concurrency() -> int:
    return (os.cpu_count() or 1) * 4


@dataclass(frozen=True)
class WorkerIdentity:
    """Who this worker is and where its host lives."""

    worker_id: str
    request_id: str
    host: str
    port: int

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"


class WorkerSettings(BaseSettings):
    """Worker settings, read from ``WORKER_*`` environment variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="WORKER_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging Configuration
    log_level: str = Field(default="info", description="Log floor: trace, debug, info, warn or error")
    log_format: str = Field(default="text", description="Log format (text, json)")

    # Execution Configuration
    max_concurrency: int = Field(default_factory=default_concurrency, ge=1, description="Concurrent invocations")
    saturation_high_water: int | None = Field(
        default=None, ge=1, description="Queued invocations above which the worker reports saturated"
    )
    outbound_queue_size: int = Field(default=1024, ge=1, description="Bound of the outbound message queue")

    # Session Configuration
    init_timeout_seconds: float = Field(default=30.0, gt=0, description="Wait for WorkerInitRequest")
    drain_grace_seconds: float = Field(default=10.0, ge=0, description="Default grace on WorkerTerminate")
    cancel_grace_seconds: float = Field(default=1.0, ge=0, description="Default grace on InvocationCancel")

    # Loading Configuration
    functions_path: Annotated[list[Path], NoDecode] = Field(
        default_factory=list, description="Directories searched for function entry points"
    )
    plugins: Annotated[list[str], NoDecode] = Field(
        default_factory=list, description="Extra plugin specs in module:attribute form"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> str:
        level = str(value).strip().lower()
        level = _LOG_LEVEL_ALIASES.get(level, level)
        if level not in LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value not in {"text", "json"}:
            raise ValueError("log format must be 'text' or 'json'")
        return value

    @field_validator("functions_path", mode="before")
    @classmethod
    def _split_search_path(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip() for item in value.split(os.pathsep) if item.strip()]
        return value

    @field_validator("plugins", mode="before")
    @classmethod
    def _split_plugin_specs(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def high_water_mark(self) -> int:
        if self.saturation_high_water is not None:
            return self.saturation_high_water
        return self.max_concurrency * 2


def get_settings(**overrides: object) -> WorkerSettings:
    """Load worker settings.

    Args:
        **overrides: Explicit values that win over the environment

    Returns:
        WorkerSettings instance

    Raises:
        ConfigurationError: if a value does not validate
    """
    try:
        return WorkerSettings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
