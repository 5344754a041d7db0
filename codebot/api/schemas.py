from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from codebot.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "account_inactive",
    "quota_exceeded",
    "provider_error",
    "completion_error",
    "execution_error",
    "provider_timeout",
    "persistence_error",
    "corrupt_credential",
    "service_unavailable",
})

MAX_CHAT_ID_LENGTH = 64
MAX_KEY_LENGTH = 256


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code``."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _strip_required(value: str, field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValueError(f"{field} is required")
    return cleaned


class ActivateKeysRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    telegram_chat_id: str = Field(..., max_length=MAX_CHAT_ID_LENGTH)
    gemini_api_key: str = Field(..., max_length=MAX_KEY_LENGTH)
    e2b_api_key: str = Field(..., max_length=MAX_KEY_LENGTH)
    display_name: Optional[str] = Field(None, max_length=255)

    @field_validator("telegram_chat_id", mode="before")
    @classmethod
    def _chat_id_to_str(cls, value: Any) -> str:
        # Telegram chat ids arrive as JSON numbers from most clients
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("telegram_chat_id")
    @classmethod
    def _chat_id_present(cls, value: str) -> str:
        return _strip_required(value, "telegram_chat_id")


class RevokeKeysRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    telegram_chat_id: str = Field(..., max_length=MAX_CHAT_ID_LENGTH)

    @field_validator("telegram_chat_id", mode="before")
    @classmethod
    def _chat_id_to_str(cls, value: Any) -> str:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("telegram_chat_id")
    @classmethod
    def _chat_id_present(cls, value: str) -> str:
        return _strip_required(value, "telegram_chat_id")


class SetAccountActiveRequest(RevokeKeysRequest):
    """``is_active`` false deactivates, true reactivates, null clears the flag."""

    is_active: Optional[bool]


class KeysActivatedResponse(BaseModel):
    user_id: str
    telegram_chat_id: str
    tier: str
    message_quota: int
    message: str = "API keys activated successfully"


class KeysRevokedResponse(BaseModel):
    user_id: str
    telegram_chat_id: str
    tier: str
    message: str = "API keys revoked successfully"


class KeyStatusResponse(BaseModel):
    telegram_chat_id: str
    registered: bool
    has_keys: bool
    tier: Optional[str] = None


class AccountStatusResponse(BaseModel):
    user_id: str
    telegram_chat_id: str
    is_active: Optional[bool] = None


class HealthResponse(BaseModel):
    status: str
    checks: Dict[str, Dict[str, Any]]
    timestamp: datetime


class StoreStatusResponse(BaseModel):
    users: int
    active_users: int
    conversations: int
    messages: int
    usage_logs: int
