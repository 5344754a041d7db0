from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from codebot.logging import get_logger
from codebot.storage.common import generate_uuid, parse_is_active
from codebot.storage.errors import ConstraintViolation
from codebot.storage.models import (
    Conversation,
    Message,
    MessageRole,
    StoreStatus,
    Tier,
    UsageLog,
    User,
    UserUpdate,
    apply_user_update,
    utcnow,
)


class MemoryStore:
    """In-process store used for tests and single-node development.

    All reads and writes go through ``_data_lock`` so counters and
    message order stay consistent when handlers run on worker threads.
    When ``state_dir`` is given the store snapshots itself to JSON after
    every write and reloads that snapshot on start-up.
    """

    def __init__(self, state_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._users_by_external_id: Dict[str, str] = {}
        self.conversations: Dict[str, Conversation] = {}
        self._conversations_by_thread: Dict[str, str] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.usage_logs: List[UsageLog] = []
        self._usage_seq = 1
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- users -----------------------------------------------------------

    def find_user_by_external_id(self, external_id: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._users_by_external_id.get(str(external_id))
            if user_id is None:
                return None
            return replace(self.users[user_id])

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.external_id in self._users_by_external_id:
                raise ConstraintViolation(
                    "user already exists", {"external_id": user.external_id}
                )
            stored = replace(user)
            self.users[stored.id] = stored
            self._users_by_external_id[stored.external_id] = stored.id
            self._persist_state()
            return replace(stored)

    def update_user(self, user_id: str, update: UserUpdate) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            updated = apply_user_update(user, update)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def increment_message_count(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.message_count += 1
            user.updated_at = utcnow()
            self._persist_state()
            return user.message_count

    def reset_quota_if_due(
        self, user_id: str, now: datetime, period_days: int
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.quota_reset_date > now:
                return None
            self._reset_quota(user, now, period_days)
            self._persist_state()
            return replace(user)

    def reset_expired_quotas(self, now: datetime, period_days: int) -> int:
        with self._data_lock:
            due = [u for u in self.users.values() if u.quota_reset_date <= now]
            for user in due:
                self._reset_quota(user, now, period_days)
            if due:
                self._persist_state()
            return len(due)

    @staticmethod
    def _reset_quota(user: User, now: datetime, period_days: int) -> None:
        user.message_count = 0
        user.quota_reset_date = now + timedelta(days=period_days)
        user.updated_at = now

    # -- conversations ---------------------------------------------------

    def find_or_create_conversation(self, user_id: str, thread_id: str) -> Conversation:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            conv_id = self._conversations_by_thread.get(thread_id)
            if conv_id is not None:
                conv = self.conversations[conv_id]
                if conv.user_id != user_id:
                    raise ConstraintViolation(
                        "thread belongs to another user", {"thread_id": thread_id}
                    )
                conv.updated_at = utcnow()
                return replace(conv)
            conv = Conversation(id=generate_uuid(), user_id=user_id, thread_id=thread_id)
            self.conversations[conv.id] = conv
            self._conversations_by_thread[thread_id] = conv.id
            self.messages[conv.id] = []
            self._persist_state()
            return replace(conv)

    def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        tokens_used: Optional[int] = None,
    ) -> Message:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if conv is None:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            msg = Message(
                id=generate_uuid(),
                conversation_id=conversation_id,
                role=MessageRole(role),
                content=content,
                tokens_used=tokens_used,
            )
            self.messages.setdefault(conversation_id, []).append(msg)
            conv.updated_at = msg.created_at
            self._persist_state()
            return replace(msg)

    def recent_messages(self, conversation_id: str, limit: int = 20) -> List[Message]:
        with self._data_lock:
            visible = [
                m for m in self.messages.get(conversation_id, []) if m.deleted_at is None
            ]
            return [replace(m) for m in visible[-limit:]] if limit > 0 else []

    def soft_delete_messages_before(self, cutoff: datetime) -> int:
        now = utcnow()
        count = 0
        with self._data_lock:
            for msgs in self.messages.values():
                for msg in msgs:
                    if msg.deleted_at is None and msg.created_at < cutoff:
                        msg.deleted_at = now
                        count += 1
            if count:
                self._persist_state()
        return count

    # -- usage -----------------------------------------------------------

    def log_usage(self, entry: UsageLog) -> UsageLog:
        with self._data_lock:
            stored = replace(entry, id=self._usage_seq)
            self._usage_seq += 1
            self.usage_logs.append(stored)
            self._persist_state()
            return replace(stored)

    def prune_usage_logs(self, before: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.usage_logs if e.created_at >= before]
            removed = len(self.usage_logs) - len(kept)
            self.usage_logs = kept
            if removed:
                self._persist_state()
            return removed

    # -- health ----------------------------------------------------------

    def status(self) -> StoreStatus:
        with self._data_lock:
            return StoreStatus(
                users=len(self.users),
                active_users=sum(1 for u in self.users.values() if u.is_active is not False),
                conversations=len(self.conversations),
                messages=sum(
                    1 for msgs in self.messages.values() for m in msgs if m.deleted_at is None
                ),
                usage_logs=len(self.usage_logs),
            )

    def ping(self) -> bool:
        return True

    # -- snapshot persistence -------------------------------------------

    def _state_path(self) -> Path:
        assert self.state_dir is not None
        return self.state_dir / "memory_store.json"

    @staticmethod
    def _to_json(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in list(data.items()):
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, Enum):
                data[key] = value.value
        return data

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.state_dir is None:
            return
        state = {
            "users": [self._to_json(u) for u in self.users.values()],
            "conversations": [self._to_json(c) for c in self.conversations.values()],
            "messages": [
                self._to_json(m) for msgs in self.messages.values() for m in msgs
            ],
            "usage_logs": [self._to_json(e) for e in self.usage_logs],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for raw in data.get("users", []):
            user = User(
                id=raw["id"],
                external_id=raw["external_id"],
                display_name=raw.get("display_name"),
                tier=Tier(raw.get("tier", Tier.FREE.value)),
                message_count=int(raw.get("message_count", 0)),
                message_quota=int(raw.get("message_quota", 100)),
                quota_reset_date=self._parse_dt(raw["quota_reset_date"]),
                is_active=parse_is_active(raw.get("is_active")),
                encrypted_completion_credential=raw.get("encrypted_completion_credential"),
                encrypted_execution_credential=raw.get("encrypted_execution_credential"),
                created_at=self._parse_dt(raw["created_at"]),
                updated_at=self._parse_dt(raw["updated_at"]),
            )
            self.users[user.id] = user
            self._users_by_external_id[user.external_id] = user.id
        for raw in data.get("conversations", []):
            conv = Conversation(
                id=raw["id"],
                user_id=raw["user_id"],
                thread_id=raw["thread_id"],
                created_at=self._parse_dt(raw["created_at"]),
                updated_at=self._parse_dt(raw["updated_at"]),
            )
            self.conversations[conv.id] = conv
            self._conversations_by_thread[conv.thread_id] = conv.id
            self.messages.setdefault(conv.id, [])
        for raw in data.get("messages", []):
            msg = Message(
                id=raw["id"],
                conversation_id=raw["conversation_id"],
                role=MessageRole(raw["role"]),
                content=raw["content"],
                tokens_used=raw.get("tokens_used"),
                created_at=self._parse_dt(raw["created_at"]),
                deleted_at=self._parse_dt(raw.get("deleted_at")),
            )
            self.messages.setdefault(msg.conversation_id, []).append(msg)
        for raw in data.get("usage_logs", []):
            self.usage_logs.append(
                UsageLog(
                    id=raw.get("id"),
                    user_id=raw.get("user_id"),
                    operation_type=raw["operation_type"],
                    tokens_used=raw.get("tokens_used"),
                    success=bool(raw["success"]),
                    error_message=raw.get("error_message"),
                    created_at=self._parse_dt(raw["created_at"]),
                )
            )
        self._usage_seq = max((e.id or 0 for e in self.usage_logs), default=0) + 1
        return True
