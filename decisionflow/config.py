from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from decisionflow.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for validation, node dispatch and experiments."""

    agent_strict_mode: bool = env_field(
        False,
        "WORKFLOW_AGENT_STRICT_MODE",
        description="Fail agent nodes on provider auth errors instead of degrading",
    )
    agent_default_timeout_ms: int = env_field(30000, "AGENT_DEFAULT_TIMEOUT_MS")
    agent_default_retry_backoff_ms: int = env_field(
        2000, "AGENT_DEFAULT_RETRY_BACKOFF_MS"
    )
    agent_max_timeout_ms: int = env_field(300000, "AGENT_MAX_TIMEOUT_MS")
    model_config_cache_ttl_seconds: float = env_field(
        300,
        "MODEL_CONFIG_CACHE_TTL_SECONDS",
        description="Seconds before cached model configs are reloaded",
    )
    model_provider_api_key: str | None = env_field(None, "MODEL_PROVIDER_API_KEY")
    model_provider_base_url: str = env_field(
        "https://api.openai.com/v1", "MODEL_PROVIDER_BASE_URL"
    )
    experiment_min_sample_size: int = env_field(
        10,
        "EXPERIMENT_MIN_SAMPLE_SIZE",
        description="Runs a variant needs before auto-stop is considered",
    )
    experiment_recent_runs_limit: int = env_field(50, "EXPERIMENT_RECENT_RUNS_LIMIT")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "agent_default_timeout_ms",
        "agent_default_retry_backoff_ms",
        "agent_max_timeout_ms",
    )
    @classmethod
    def _validate_non_negative_ms(cls, value: int) -> int:
        if value < 0:
            raise ValueError("millisecond settings must be non-negative")
        return value

    @field_validator("experiment_min_sample_size")
    @classmethod
    def _validate_min_sample(cls, value: int) -> int:
        if value < 1:
            raise ValueError("experiment_min_sample_size must be at least 1")
        return value

    @field_validator("model_config_cache_ttl_seconds")
    @classmethod
    def _validate_cache_ttl(cls, value: float) -> float:
        if value < 0:
            logger.warning("model_config_cache_ttl_negative", value=value)
            return 0
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Drop the cached settings so the next call re-reads the environment."""

    global _settings_cache
    _settings_cache = None
