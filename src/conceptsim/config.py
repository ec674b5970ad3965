"""Configuration loading and strict validation for conceptsim."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field


class StrictModel(BaseModel):
    """Base model that rejects unknown keys."""

    model_config = ConfigDict(extra="forbid")


class SessionConfig(StrictModel):
    refresh_threshold_seconds: float = 300.0
    refresh_retries: int = Field(default=1, ge=0, le=1)
    revalidate_interval_seconds: float = 120.0


class CredentialsConfig(StrictModel):
    provider: Literal["static", "http"] = "http"
    base_url: str = "http://localhost:54321"
    api_key_env: str = "CONCEPTSIM_AUTH_API_KEY"
    email_env: str = "CONCEPTSIM_EMAIL"
    password_env: str = "CONCEPTSIM_PASSWORD"
    access_token_env: str = "CONCEPTSIM_ACCESS_TOKEN"
    timeout_seconds: float = 15.0


class GenerationConfig(StrictModel):
    endpoint: str = "http://localhost:54321/functions/v1/simulate"
    timeout_seconds: float = 60.0
    max_prompt_chars: int = Field(default=2000, gt=0)
    diagnostic_body_chars: int = Field(default=200, gt=0)


class QuotaConfig(StrictModel):
    limit: int = Field(default=2000, ge=0)
    chars_per_unit: int = Field(default=4, gt=0)


class SandboxConfig(StrictModel):
    execution_timeout_seconds: int = Field(default=5, gt=0)
    readiness_timeout_seconds: float = 2.0
    frame_interval_seconds: float = 1.0 / 60.0
    max_pending_timers: int = 256
    max_draw_commands: int = 5000
    max_console_lines: int = 200
    allowed_modules: list[str] = Field(
        default_factory=lambda: ["math", "cmath", "random", "json", "colorsys", "itertools", "functools", "collections"]
    )


class DashboardConfig(StrictModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9000


class LoggingConfig(StrictModel):
    logs_dir: str = "logs"
    event_file_name: str = "events.jsonl"
    recent_event_limit: int = Field(default=500, gt=0)


class AppConfig(StrictModel):
    session: SessionConfig = Field(default_factory=SessionConfig)
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: str | Path = "config/config.yaml") -> AppConfig:
    """Load and strictly validate YAML config."""
    path = Path(config_path)
    with path.open("r", encoding="utf-8") as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}
    return AppConfig.model_validate(raw)


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Load default config once and cache it."""
    return load_config()
