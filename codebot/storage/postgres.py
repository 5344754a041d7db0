from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from codebot.logging import get_logger
from codebot.storage.common import generate_uuid, parse_is_active, safe_row_value
from codebot.storage.errors import ConstraintViolation
from codebot.storage.models import (
    ChangeTier,
    ClearCredentials,
    Conversation,
    Message,
    MessageRole,
    SetActive,
    SetCredentials,
    StoreStatus,
    Tier,
    TouchActivity,
    UsageLog,
    User,
    UserUpdate,
    utcnow,
)

_USER_COLUMNS = (
    "id, external_id, display_name, tier, message_count, message_quota, "
    "quota_reset_date, is_active, encrypted_completion_credential, "
    "encrypted_execution_credential, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed user, conversation and usage store.

    Counter updates are expressed in SQL (``message_count + 1``) so the
    database serialises concurrent increments for the same row.
    """

    REQUIRED_TABLES = ("bot_user", "conversation", "message", "usage_log")

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Refuse to start against a database without the bot tables."""

        with self._connect() as conn:
            missing_tables = []
            for table in self.REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/apply_schema.py first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -----------------------------------------------------

    @staticmethod
    def _user_from_row(row: Any) -> User:
        return User(
            id=str(row["id"]),
            external_id=str(row["external_id"]),
            display_name=safe_row_value(row, "display_name"),
            tier=Tier(safe_row_value(row, "tier", Tier.FREE.value)),
            message_count=int(safe_row_value(row, "message_count", 0) or 0),
            message_quota=int(safe_row_value(row, "message_quota", 100) or 100),
            quota_reset_date=row["quota_reset_date"],
            is_active=parse_is_active(safe_row_value(row, "is_active")),
            encrypted_completion_credential=safe_row_value(
                row, "encrypted_completion_credential"
            ),
            encrypted_execution_credential=safe_row_value(
                row, "encrypted_execution_credential"
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _conversation_from_row(row: Any) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            thread_id=row["thread_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _message_from_row(row: Any) -> Message:
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=MessageRole(row["role"]),
            content=row["content"],
            tokens_used=safe_row_value(row, "tokens_used"),
            created_at=row["created_at"],
            deleted_at=safe_row_value(row, "deleted_at"),
        )

    # -- users -----------------------------------------------------------

    def find_user_by_external_id(self, external_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM bot_user WHERE external_id = %s",
                (str(external_id),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM bot_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO bot_user (
                        id, external_id, display_name, tier, message_count, message_quota,
                        quota_reset_date, is_active, encrypted_completion_credential,
                        encrypted_execution_credential, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user.id,
                        user.external_id,
                        user.display_name,
                        Tier(user.tier).value,
                        user.message_count,
                        user.message_quota,
                        user.quota_reset_date,
                        user.is_active,
                        user.encrypted_completion_credential,
                        user.encrypted_execution_credential,
                        user.created_at,
                        user.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("user already exists", {"external_id": user.external_id})
        return self._user_from_row(row)

    def update_user(self, user_id: str, update: UserUpdate) -> User:
        if isinstance(update, ChangeTier):
            assignments = "tier = %s, message_quota = %s"
            params: tuple = (Tier(update.tier).value, update.message_quota)
        elif isinstance(update, SetCredentials):
            assignments = "encrypted_completion_credential = %s, encrypted_execution_credential = %s"
            params = (
                update.encrypted_completion_credential,
                update.encrypted_execution_credential,
            )
        elif isinstance(update, ClearCredentials):
            assignments = "encrypted_completion_credential = NULL, encrypted_execution_credential = NULL"
            params = ()
        elif isinstance(update, TouchActivity):
            assignments = ""
            params = ()
        elif isinstance(update, SetActive):
            assignments = "is_active = %s"
            params = (update.is_active,)
        else:
            raise TypeError(f"unsupported user update: {type(update).__name__}")
        if isinstance(update, (SetCredentials, ClearCredentials)) and update.tier_change:
            # Keys and tier move together in one statement
            assignments += ", tier = %s, message_quota = %s"
            params = (
                *params,
                Tier(update.tier_change.tier).value,
                update.tier_change.message_quota,
            )

        touched_at = update.at if isinstance(update, TouchActivity) and update.at else utcnow()
        set_clause = f"{assignments}, updated_at = %s" if assignments else "updated_at = %s"
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE bot_user SET {set_clause} WHERE id = %s RETURNING {_USER_COLUMNS}",
                (*params, touched_at, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return self._user_from_row(row)

    def increment_message_count(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE bot_user
                SET message_count = message_count + 1, updated_at = now()
                WHERE id = %s
                RETURNING message_count
                """,
                (user_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return int(row["message_count"])

    def reset_quota_if_due(
        self, user_id: str, now: datetime, period_days: int
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE bot_user
                SET message_count = 0, quota_reset_date = %s, updated_at = %s
                WHERE id = %s AND quota_reset_date <= %s
                RETURNING {_USER_COLUMNS}
                """,
                (now + timedelta(days=period_days), now, user_id, now),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def reset_expired_quotas(self, now: datetime, period_days: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE bot_user
                SET message_count = 0, quota_reset_date = %s, updated_at = %s
                WHERE quota_reset_date <= %s
                """,
                (now + timedelta(days=period_days), now, now),
            )
            return cur.rowcount or 0

    # -- conversations ---------------------------------------------------

    def find_or_create_conversation(self, user_id: str, thread_id: str) -> Conversation:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO conversation (id, user_id, thread_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (thread_id) DO UPDATE SET updated_at = now()
                    RETURNING id, user_id, thread_id, created_at, updated_at
                    """,
                    (generate_uuid(), user_id, thread_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        conv = self._conversation_from_row(row)
        if conv.user_id != str(user_id):
            raise ConstraintViolation("thread belongs to another user", {"thread_id": thread_id})
        return conv

    def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        tokens_used: Optional[int] = None,
    ) -> Message:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        INSERT INTO message (id, conversation_id, role, content, tokens_used)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING id, conversation_id, role, content, tokens_used, created_at, deleted_at
                        """,
                        (
                            generate_uuid(),
                            conversation_id,
                            MessageRole(role).value,
                            content,
                            tokens_used,
                        ),
                    ).fetchone()
                    conn.execute(
                        "UPDATE conversation SET updated_at = now() WHERE id = %s",
                        (conversation_id,),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "conversation not found", {"conversation_id": conversation_id}
            )
        return self._message_from_row(row)

    def recent_messages(self, conversation_id: str, limit: int = 20) -> List[Message]:
        if limit <= 0:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, conversation_id, role, content, tokens_used, created_at, deleted_at
                FROM (
                    SELECT * FROM message
                    WHERE conversation_id = %s AND deleted_at IS NULL
                    ORDER BY seq DESC
                    LIMIT %s
                ) recent
                ORDER BY seq ASC
                """,
                (conversation_id, limit),
            ).fetchall()
        return [self._message_from_row(row) for row in rows]

    def soft_delete_messages_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE message SET deleted_at = now() WHERE deleted_at IS NULL AND created_at < %s",
                (cutoff,),
            )
            return cur.rowcount or 0

    # -- usage -----------------------------------------------------------

    def log_usage(self, entry: UsageLog) -> UsageLog:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO usage_log (user_id, operation_type, tokens_used, success, error_message, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id, created_at
                """,
                (
                    entry.user_id,
                    entry.operation_type,
                    entry.tokens_used,
                    entry.success,
                    entry.error_message,
                    entry.created_at,
                ),
            ).fetchone()
        return UsageLog(
            id=row["id"],
            user_id=entry.user_id,
            operation_type=entry.operation_type,
            tokens_used=entry.tokens_used,
            success=entry.success,
            error_message=entry.error_message,
            created_at=row["created_at"],
        )

    def prune_usage_logs(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM usage_log WHERE created_at < %s", (before,))
            return cur.rowcount or 0

    # -- health ----------------------------------------------------------

    def status(self) -> StoreStatus:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    (SELECT count(*) FROM bot_user) AS users,
                    (SELECT count(*) FROM bot_user WHERE is_active IS DISTINCT FROM FALSE) AS active_users,
                    (SELECT count(*) FROM conversation) AS conversations,
                    (SELECT count(*) FROM message WHERE deleted_at IS NULL) AS messages,
                    (SELECT count(*) FROM usage_log) AS usage_logs
                """
            ).fetchone()
        return StoreStatus(
            users=int(row["users"]),
            active_users=int(row["active_users"]),
            conversations=int(row["conversations"]),
            messages=int(row["messages"]),
            usage_logs=int(row["usage_logs"]),
        )

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except Exception as exc:
            self.logger.warning("postgres_ping_failed", error=str(exc))
            return False
        return True
