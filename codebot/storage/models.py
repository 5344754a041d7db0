from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    """Subscription levels; each one maps to a monthly message ceiling."""

    FREE = "FREE"
    BASIC = "BASIC"
    PRO = "PRO"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class User:
    """A chat participant keyed by the transport's chat identity.

    ``is_active`` is tri-state: ``None`` means the flag was never set and
    counts as active; only an explicit ``False`` blocks the account.
    """

    id: str
    external_id: str
    display_name: Optional[str] = None
    tier: Tier = Tier.FREE
    message_count: int = 0
    message_quota: int = 100
    quota_reset_date: datetime = field(default_factory=lambda: utcnow() + timedelta(days=30))
    is_active: Optional[bool] = True
    encrypted_completion_credential: Optional[str] = None
    encrypted_execution_credential: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        external_id: str,
        display_name: Optional[str] = None,
        *,
        message_quota: int = 100,
        quota_period_days: int = 30,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            external_id=str(external_id),
            display_name=display_name,
            tier=Tier.FREE,
            message_count=0,
            message_quota=message_quota,
            quota_reset_date=now + timedelta(days=quota_period_days),
            is_active=True,
            created_at=now,
            updated_at=now,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.encrypted_completion_credential and self.encrypted_execution_credential)


@dataclass
class Conversation:
    id: str
    user_id: str
    thread_id: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    tokens_used: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class UsageLog:
    operation_type: str
    success: bool
    user_id: Optional[str] = None
    tokens_used: Optional[int] = None
    error_message: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class StoreStatus:
    users: int
    active_users: int
    conversations: int
    messages: int
    usage_logs: int


# Enumerated user mutations. ``UserStore.update`` accepts nothing else.


@dataclass(frozen=True)
class ChangeTier:
    tier: Tier
    message_quota: int


@dataclass(frozen=True)
class SetCredentials:
    encrypted_completion_credential: str
    encrypted_execution_credential: str
    tier_change: Optional[ChangeTier] = None


@dataclass(frozen=True)
class ClearCredentials:
    tier_change: Optional[ChangeTier] = None


@dataclass(frozen=True)
class TouchActivity:
    at: Optional[datetime] = None


@dataclass(frozen=True)
class SetActive:
    is_active: Optional[bool]


UserUpdate = Union[ChangeTier, SetCredentials, ClearCredentials, TouchActivity, SetActive]


def apply_user_update(user: User, update: UserUpdate, now: Optional[datetime] = None) -> User:
    """Return a copy of ``user`` with ``update`` applied and ``updated_at`` bumped."""

    now = now or utcnow()
    if isinstance(update, ChangeTier):
        return replace(user, tier=Tier(update.tier), message_quota=update.message_quota, updated_at=now)
    if isinstance(update, (SetCredentials, ClearCredentials)):
        if isinstance(update, SetCredentials):
            keys = (update.encrypted_completion_credential, update.encrypted_execution_credential)
        else:
            keys = (None, None)
        user = replace(
            user,
            encrypted_completion_credential=keys[0],
            encrypted_execution_credential=keys[1],
            updated_at=now,
        )
        if update.tier_change is not None:
            return apply_user_update(user, update.tier_change, now)
        return user
    if isinstance(update, TouchActivity):
        return replace(user, updated_at=update.at or now)
    if isinstance(update, SetActive):
        return replace(user, is_active=update.is_active, updated_at=now)
    raise TypeError(f"unsupported user update: {type(update).__name__}")
