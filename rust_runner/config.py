from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import (
    DEFAULT_HOST,
    DEFAULT_MAX_CONCURRENT_RUNS,
    DEFAULT_PORT,
    DEFAULT_PROJECTS_ROOT,
    DEFAULT_RUN_TIMEOUT_SECONDS,
    DEFAULT_RUNNER_PATH,
    DEFAULT_STORAGE_MAX_RETRIES,
    DEFAULT_STORAGE_TIMEOUT_SECONDS,
    DEFAULT_STORAGE_URL,
)
from .logging import LogLevel, LogSink

UnknownPartPolicy = Literal["accept", "reject"]

ENVIRONMENT_KEYS: dict[str, str] = {
    "storage_url": "WALRUS_API_URL",
    "host": "HOST",
    "port": "PORT",
    "cors_allowed_origins": "CORS_ALLOWED_ORIGIN",
    "projects_root": "PROJECTS_ROOT",
    "runner_path": "RUNNER_PATH",
    "run_timeout_seconds": "RUN_TIMEOUT_SECONDS",
    "max_concurrent_runs": "MAX_CONCURRENT_RUNS",
    "unknown_parts": "UNKNOWN_PART_POLICY",
    "storage_timeout_seconds": "STORAGE_TIMEOUT_SECONDS",
    "storage_max_retries": "STORAGE_MAX_RETRIES",
    "log_path": "RUNNER_LOG_PATH",
    "log_level": "LOG_LEVEL",
}


class Settings(BaseModel):
    """Process-wide configuration, resolved once at startup."""

    storage_url: str = DEFAULT_STORAGE_URL
    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    cors_allowed_origins: list[str] = Field(default_factory=lambda: ["*"])
    projects_root: Path = Path(DEFAULT_PROJECTS_ROOT)
    runner_path: str = DEFAULT_RUNNER_PATH
    run_timeout_seconds: float = Field(default=DEFAULT_RUN_TIMEOUT_SECONDS, gt=0)
    max_concurrent_runs: int = Field(default=DEFAULT_MAX_CONCURRENT_RUNS, ge=1)
    unknown_parts: UnknownPartPolicy = "accept"
    storage_timeout_seconds: float = Field(
        default=DEFAULT_STORAGE_TIMEOUT_SECONDS,
        gt=0,
    )
    storage_max_retries: int = Field(default=DEFAULT_STORAGE_MAX_RETRIES, ge=0)
    log_path: str = ""
    log_level: LogLevel = "info"

    @field_validator("storage_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        stripped = value.strip().rstrip("/")
        if not stripped:
            raise ValueError("storage_url must not be empty")
        return stripped

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def split_origins(cls, value: object) -> object:
        if isinstance(value, str):
            return parse_origins(value)
        return value

    @field_validator("unknown_parts", "log_level", mode="before")
    @classmethod
    def normalize_choice(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def log_sink(self) -> LogSink:
        return LogSink(path=self.log_path, min_level=self.log_level)

    @property
    def allow_any_origin(self) -> bool:
        return "*" in self.cors_allowed_origins

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        source = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for field_name, env_key in ENVIRONMENT_KEYS.items():
            raw = source.get(env_key)
            if raw is None or not raw.strip():
                continue
            values[field_name] = raw.strip()
        try:
            return cls.model_validate(values)
        except ValidationError as error:
            raise ValueError(f"Invalid configuration: {error}") from error


def parse_origins(raw: str) -> list[str]:
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or ["*"]
