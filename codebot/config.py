from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from codebot.storage.models import Tier


class CompletionBackend(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"


@dataclass(frozen=True)
class TierConfig:
    name: str
    message_quota: int
    price: str
    features: tuple[str, ...]


# PRO follows the figure shown to users in the upgrade notice.
TIER_CONFIGS: dict[Tier, TierConfig] = {
    Tier.FREE: TierConfig(
        name="Free",
        message_quota=100,
        price="$0/month",
        features=("Basic AI chat", "Code execution", "File operations"),
    ),
    Tier.BASIC: TierConfig(
        name="Basic",
        message_quota=500,
        price="$5/month",
        features=(
            "Everything in Free",
            "Browser automation",
            "Personal API keys",
            "Priority support",
        ),
    ),
    Tier.PRO: TierConfig(
        name="Pro",
        message_quota=2000,
        price="$15/month",
        features=(
            "Everything in Basic",
            "Advanced operations",
            "Longer sessions",
            "Custom integrations",
        ),
    ),
}


def tier_config(tier: Tier | str) -> TierConfig:
    return TIER_CONFIGS[Tier(tier)]


def tier_quota(tier: Tier | str) -> int:
    """Message ceiling for ``tier``; unknown values fall back to FREE."""

    try:
        return TIER_CONFIGS[Tier(tier)].message_quota
    except ValueError:
        return TIER_CONFIGS[Tier.FREE].message_quota


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings for the relay bot and its admin API."""

    database_url: str = env_field(
        "postgresql://localhost:5432/codebot", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str | None = env_field(None, "STATE_DIR")
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

    # Secrets
    credential_encryption_key: str | None = env_field(None, "ENCRYPTION_KEY")
    telegram_bot_token: str | None = env_field(None, "TELEGRAM_BOT_TOKEN")
    admin_api_token: str | None = env_field(None, "ADMIN_API_TOKEN")

    # System-wide provider credentials used when a user has none of their own
    default_completion_key: str | None = env_field(None, "GEMINI_API_KEY")
    default_execution_key: str | None = env_field(None, "E2B_API_KEY")

    # Providers
    completion_backend: CompletionBackend = env_field(
        CompletionBackend.GEMINI, "COMPLETION_BACKEND"
    )
    completion_model: str = env_field("gemini-2.5-flash-lite", "COMPLETION_MODEL")
    completion_base_url: str | None = env_field(None, "COMPLETION_BASE_URL")
    execution_base_url: str = env_field("https://api.e2b.app", "EXECUTION_BASE_URL")
    execution_template: str = env_field("base", "EXECUTION_TEMPLATE")
    provider_timeout_seconds: float = env_field(30.0, "PROVIDER_TIMEOUT_SECONDS")
    operation_timeout_seconds: float = env_field(30.0, "OPERATION_TIMEOUT_SECONDS")
    execution_timeout_seconds: float = env_field(120.0, "EXECUTION_TIMEOUT_SECONDS")
    retry_max_attempts: int = env_field(3, "RETRY_MAX_ATTEMPTS")
    retry_base_delay: float = env_field(1.0, "RETRY_BASE_DELAY")
    retry_multiplier: float = env_field(2.0, "RETRY_MULTIPLIER")
    retry_max_delay: float = env_field(10.0, "RETRY_MAX_DELAY")

    # Behaviour
    max_message_chars: int = env_field(8000, "MAX_MESSAGE_CHARS")
    history_limit: int = env_field(20, "HISTORY_LIMIT")
    credential_cache_ttl_seconds: int = env_field(1800, "CREDENTIAL_CACHE_TTL_SECONDS")
    quota_period_days: int = env_field(30, "QUOTA_PERIOD_DAYS")
    message_retention_days: int = env_field(30, "MESSAGE_RETENTION_DAYS")
    usage_log_retention_days: int = env_field(90, "USAGE_LOG_RETENTION_DAYS")
    maintenance_interval_seconds: int = env_field(3600, "MAINTENANCE_INTERVAL_SECONDS")
    transport_chunk_size: int = env_field(4000, "TRANSPORT_CHUNK_SIZE")
    transport_chunk_delay: float = env_field(0.1, "TRANSPORT_CHUNK_DELAY")
    support_contact: str = env_field("@codebot_support", "SUPPORT_CONTACT")
    activation_url: str = env_field("http://localhost:3001/activate", "ACTIVATION_URL")

    model_config = ConfigDict(extra="ignore")

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

    @field_validator("completion_backend")
    @classmethod
    def _validate_backend(cls, value: CompletionBackend) -> CompletionBackend:
        return CompletionBackend(value)

    @field_validator("redis_url", "credential_encryption_key", "telegram_bot_token", "admin_api_token")
    @classmethod
    def _blank_is_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return str(value).strip()

    @field_validator(
        "provider_timeout_seconds",
        "operation_timeout_seconds",
        "execution_timeout_seconds",
        "retry_base_delay",
        "retry_max_delay",
    )
    @classmethod
    def _positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator(
        "retry_max_attempts",
        "max_message_chars",
        "history_limit",
        "credential_cache_ttl_seconds",
        "quota_period_days",
        "message_retention_days",
        "usage_log_retention_days",
        "maintenance_interval_seconds",
        "transport_chunk_size",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("retry_multiplier")
    @classmethod
    def _multiplier_at_least_one(cls, value: float) -> float:
        if value < 1:
            raise ValueError("retry multiplier must be >= 1")
        return value

    @field_validator("transport_chunk_delay")
    @classmethod
    def _non_negative_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("chunk delay cannot be negative")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
