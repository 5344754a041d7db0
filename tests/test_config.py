import pytest
from pydantic import ValidationError

from codebot.config import (
    CompletionBackend,
    Settings,
    get_settings,
    reset_settings_cache,
    tier_config,
    tier_quota,
)
from codebot.storage.models import Tier


def test_tier_quotas():
    assert tier_quota(Tier.FREE) == 100
    assert tier_quota(Tier.BASIC) == 500
    assert tier_quota("PRO") == 2000
    assert tier_quota("PLATINUM") == 100


def test_tier_features_are_listed():
    assert "Personal API keys" in tier_config(Tier.BASIC).features


def test_from_env_uses_declared_names(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "AIza-default")
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("COMPLETION_BACKEND", "openai")
    monkeypatch.setenv("SUPPORT_CONTACT", "@help")

    settings = Settings.from_env()

    assert settings.default_completion_key == "AIza-default"
    assert settings.retry_max_attempts == 5
    assert settings.completion_backend is CompletionBackend.OPENAI
    assert settings.support_contact == "@help"


def test_blank_secrets_become_none():
    settings = Settings(redis_url="  ", telegram_bot_token="", admin_api_token=" t ")
    assert settings.redis_url is None
    assert settings.telegram_bot_token is None
    assert settings.admin_api_token == "t"


@pytest.mark.parametrize(
    "field,value",
    [
        ("provider_timeout_seconds", 0),
        ("retry_max_attempts", 0),
        ("retry_multiplier", 0.5),
        ("transport_chunk_delay", -1),
        ("transport_chunk_size", 0),
        ("completion_backend", "llama"),
    ],
)
def test_invalid_values_are_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(**{field: value})


def test_settings_are_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("HISTORY_LIMIT", "7")
    reset_settings_cache()
    assert get_settings().history_limit == 7
