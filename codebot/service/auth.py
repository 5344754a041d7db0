from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from codebot.config import Settings, tier_quota
from codebot.logging import get_logger, sanitize_error_message
from codebot.service import notices
from codebot.service.errors import (
    InactiveAccountError,
    NotFoundError,
    PersistenceError,
    QuotaExceededError,
    ServiceError,
)
from codebot.service.quota import QuotaGate, QuotaStatus, is_account_active
from codebot.service.transport import Transport
from codebot.storage.common import UserStore
from codebot.storage.errors import ConstraintViolation
from codebot.storage.models import SetActive, Tier, TouchActivity, UsageLog, User, utcnow

logger = get_logger(__name__)


class GateState(str, Enum):
    NEW_USER = "new_user"
    ACTIVE = "active"
    INACTIVE = "inactive"
    QUOTA_EXCEEDED = "quota_exceeded"
    ERROR = "error"


@dataclass(frozen=True)
class GateOutcome:
    state: GateState
    user: Optional[User] = None
    quota: Optional[QuotaStatus] = None
    remaining_quota: Optional[int] = None
    error: Optional[ServiceError] = None

    @property
    def proceed(self) -> bool:
        return self.state is GateState.ACTIVE


class AuthenticationGate:
    """Resolve a chat identity and decide whether its message may proceed.

    Exactly one of four things happens per inbound message: a new account
    is created (and the message dropped), a deactivation notice is sent,
    a quota notice is sent, or the activity timestamp is touched and the
    message counter incremented. Store failures never escape; they turn
    into a generic notice and an ``ERROR`` outcome.
    """

    def __init__(
        self,
        store: UserStore,
        transport: Transport,
        settings: Settings,
        *,
        quota_gate: Optional[QuotaGate] = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.settings = settings
        self.quota_gate = quota_gate or QuotaGate()

    async def authenticate(
        self, chat_id: str, display_name: Optional[str] = None
    ) -> GateOutcome:
        external_id = str(chat_id)
        user: Optional[User] = None
        try:
            user = self.store.find_user_by_external_id(external_id)
            if user is None:
                user = self._create_user(external_id, display_name)
                await self._notify(external_id, notices.welcome(user))
                return GateOutcome(GateState.NEW_USER, user=user)

            if not is_account_active(user):
                error = InactiveAccountError(
                    "account is deactivated",
                    detail={"user_id": user.id},
                    user_message=notices.account_deactivated(self.settings.support_contact),
                )
                logger.info("auth_blocked_inactive", user_id=user.id, error_code=error.error_code)
                await self._notify(external_id, error.user_message)
                return GateOutcome(GateState.INACTIVE, user=user, error=error)

            now = utcnow()
            if user.quota_reset_date <= now:
                refreshed = self.store.reset_quota_if_due(
                    user.id, now, self.settings.quota_period_days
                )
                if refreshed is not None:
                    logger.info("quota_period_rolled_over", user_id=user.id)
                    user = refreshed

            quota = self.quota_gate.evaluate(user)
            if not quota.allowed:
                error = QuotaExceededError(
                    "message quota exhausted",
                    detail={"used": quota.used, "total": quota.total},
                    user_message=notices.quota_exceeded(quota, self.settings.support_contact),
                )
                logger.info(
                    "auth_blocked_quota",
                    user_id=user.id,
                    used=quota.used,
                    total=quota.total,
                    error_code=error.error_code,
                )
                await self._notify(external_id, error.user_message)
                return GateOutcome(GateState.QUOTA_EXCEEDED, user=user, quota=quota, error=error)

            user = self.store.update_user(user.id, TouchActivity(at=now))
            new_count = self.store.increment_message_count(user.id)
            user = replace(user, message_count=new_count)
            return GateOutcome(
                GateState.ACTIVE,
                user=user,
                quota=quota,
                remaining_quota=max(0, user.message_quota - new_count),
            )
        except Exception as exc:
            logger.error(
                "authentication_failed",
                chat_id=external_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._log_failure(user.id if user else None, exc)
            error = PersistenceError(
                f"user lookup failed: {type(exc).__name__}", user_message=notices.AUTH_ERROR
            )
            await self._notify(external_id, error.user_message)
            return GateOutcome(GateState.ERROR, user=user, error=error)

    def set_active(self, chat_id: str, is_active: Optional[bool]) -> User:
        """Deactivate (``False``), reactivate (``True``) or clear the flag (``None``)."""
        user = self.store.find_user_by_external_id(str(chat_id))
        if user is None:
            raise NotFoundError("User not found", detail={"telegram_chat_id": str(chat_id)})
        user = self.store.update_user(user.id, SetActive(is_active))
        operation = "account_deactivated" if is_active is False else "account_activated"
        try:
            self.store.log_usage(UsageLog(operation_type=operation, success=True, user_id=user.id))
        except Exception as exc:
            logger.warning("usage_log_write_failed", error=str(exc))
        logger.info("account_active_changed", user_id=user.id, is_active=is_active)
        return user

    def _create_user(self, external_id: str, display_name: Optional[str]) -> User:
        candidate = User.new(
            external_id,
            display_name,
            message_quota=tier_quota(Tier.FREE),
            quota_period_days=self.settings.quota_period_days,
        )
        try:
            user = self.store.create_user(candidate)
        except ConstraintViolation:
            # A concurrent message from the same chat created the row first
            existing = self.store.find_user_by_external_id(external_id)
            if existing is None:
                raise
            return existing
        logger.info("user_created", user_id=user.id, tier=user.tier.value)
        self.store.log_usage(UsageLog(operation_type="user_created", success=True, user_id=user.id))
        return user

    def _log_failure(self, user_id: Optional[str], exc: Exception) -> None:
        try:
            self.store.log_usage(
                UsageLog(
                    operation_type="authentication_error",
                    success=False,
                    user_id=user_id,
                    error_message=sanitize_error_message(exc),
                )
            )
        except Exception as log_exc:
            logger.warning("usage_log_write_failed", error=str(log_exc))

    async def _notify(self, chat_id: str, text: str) -> None:
        try:
            await self.transport.send_text(chat_id, text)
        except Exception as exc:
            logger.warning("notice_delivery_failed", chat_id=chat_id, error=str(exc))
