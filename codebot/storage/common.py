"""Contract and helpers shared between the memory and postgres stores."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional, Protocol

from codebot.storage.models import (
    Conversation,
    Message,
    MessageRole,
    StoreStatus,
    UsageLog,
    User,
    UserUpdate,
)


class UserStore(Protocol):
    """Persistence contract consumed by the gates and the orchestrator.

    Every operation is atomic with respect to a single user or
    conversation row. ``increment_message_count`` in particular must be
    performed by the backend itself so concurrent increments are never
    lost.
    """

    def find_user_by_external_id(self, external_id: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_user(self, user: User) -> User: ...

    def update_user(self, user_id: str, update: UserUpdate) -> User: ...

    def increment_message_count(self, user_id: str) -> int: ...

    def reset_quota_if_due(
        self, user_id: str, now: datetime, period_days: int
    ) -> Optional[User]: ...

    def reset_expired_quotas(self, now: datetime, period_days: int) -> int: ...

    def find_or_create_conversation(self, user_id: str, thread_id: str) -> Conversation: ...

    def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        tokens_used: Optional[int] = None,
    ) -> Message: ...

    def recent_messages(self, conversation_id: str, limit: int = 20) -> List[Message]: ...

    def log_usage(self, entry: UsageLog) -> UsageLog: ...

    def soft_delete_messages_before(self, cutoff: datetime) -> int: ...

    def prune_usage_logs(self, before: datetime) -> int: ...

    def status(self) -> StoreStatus: ...

    def ping(self) -> bool: ...


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Extract ``key`` from a dict-like row or an object with attributes."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())


def parse_is_active(raw: Any) -> Optional[bool]:
    """Map a stored activation flag onto the tri-state model.

    Only real booleans are kept; ``NULL`` and anything unrecognised stay
    unset rather than being coerced through truthiness.
    """
    if raw is True or raw is False:
        return raw
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None
