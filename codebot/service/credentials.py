from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from codebot.config import Settings, tier_quota
from codebot.logging import get_logger, sanitize_error_message
from codebot.service.errors import CorruptCredentialError, NotFoundError, ValidationError
from codebot.service.vault import CredentialVault
from codebot.storage.common import UserStore
from codebot.storage.errors import ConstraintViolation
from codebot.storage.models import (
    ChangeTier,
    ClearCredentials,
    SetCredentials,
    Tier,
    UsageLog,
    User,
)
from codebot.storage.redis_cache import CredentialBlobs, RedisCache

COMPLETION_KEY_PREFIX = "AIza"
COMPLETION_KEY_LENGTH = 39
EXECUTION_KEY_PREFIX = "e2b_"
EXECUTION_KEY_LENGTH = 45


def validate_completion_key(value: str) -> str:
    candidate = (value or "").strip()
    if not candidate.startswith(COMPLETION_KEY_PREFIX) or len(candidate) != COMPLETION_KEY_LENGTH:
        raise ValidationError(
            f"Invalid Gemini API key format. Keys start with '{COMPLETION_KEY_PREFIX}' "
            f"and are {COMPLETION_KEY_LENGTH} characters long.",
            detail={"field": "gemini_api_key"},
        )
    return candidate


def validate_execution_key(value: str) -> str:
    candidate = (value or "").strip()
    if not candidate.startswith(EXECUTION_KEY_PREFIX) or len(candidate) != EXECUTION_KEY_LENGTH:
        raise ValidationError(
            f"Invalid E2B API key format. Keys start with '{EXECUTION_KEY_PREFIX}' "
            f"and are {EXECUTION_KEY_LENGTH} characters long.",
            detail={"field": "e2b_api_key"},
        )
    return candidate


class CredentialCache:
    """Short-lived cache of a user's *encrypted* credential blobs.

    Backed by Redis when one is configured, otherwise by a process-local
    map. Each user id has a generation counter; ``invalidate`` bumps it
    and ``put`` is refused when the caller's generation is stale, so a
    fill that raced a revoke cannot resurrect the old credentials.
    """

    def __init__(
        self,
        ttl_seconds: int,
        *,
        redis: Optional[RedisCache] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.redis = redis
        self._clock = clock
        self._entries: Dict[str, Tuple[CredentialBlobs, float]] = {}
        self._generations: Dict[str, int] = {}
        self._lock = threading.Lock()

    async def get(self, user_id: str) -> Optional[CredentialBlobs]:
        if self.redis:
            return await self.redis.get_credential_blobs(user_id)
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            blobs, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(user_id, None)
                return None
            return blobs

    async def generation(self, user_id: str) -> int:
        if self.redis:
            return await self.redis.credential_generation(user_id)
        with self._lock:
            return self._generations.get(user_id, 0)

    async def put(self, user_id: str, blobs: CredentialBlobs, *, generation: int) -> bool:
        if self.redis:
            return await self.redis.set_credential_blobs(
                user_id, blobs, generation=generation, ttl_seconds=self.ttl_seconds
            )
        with self._lock:
            if self._generations.get(user_id, 0) != generation:
                return False
            self._entries[user_id] = (blobs, self._clock() + self.ttl_seconds)
            return True

    async def invalidate(self, user_id: str) -> None:
        if self.redis:
            await self.redis.invalidate_credentials(user_id)
            return
        with self._lock:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            self._entries.pop(user_id, None)


@dataclass(frozen=True)
class ResolvedCredentials:
    completion: Optional[str]
    execution: Optional[str]
    completion_is_default: bool = True
    execution_is_default: bool = True

    def __repr__(self) -> str:
        return (
            "ResolvedCredentials(completion=***, execution=***, "
            f"completion_is_default={self.completion_is_default}, "
            f"execution_is_default={self.execution_is_default})"
        )


class CredentialResolver:
    """Pick the credentials a user's request should run with.

    A user's own decrypted key wins; an absent or undecryptable one falls
    back to the process-wide default. Undecryptable blobs are logged at
    warning level and never raised.
    """

    def __init__(
        self,
        store: UserStore,
        vault: CredentialVault,
        cache: CredentialCache,
        *,
        default_completion: Optional[str] = None,
        default_execution: Optional[str] = None,
        logger=None,
    ) -> None:
        self.store = store
        self.vault = vault
        self.cache = cache
        self.default_completion = default_completion
        self.default_execution = default_execution
        self.logger = logger or get_logger(__name__)

    async def resolve(self, user: User) -> ResolvedCredentials:
        blobs = await self._load_blobs(user)
        completion = self._decrypt(user.id, "completion", blobs[0])
        execution = self._decrypt(user.id, "execution", blobs[1])
        return ResolvedCredentials(
            completion=completion or self.default_completion,
            execution=execution or self.default_execution,
            completion_is_default=completion is None,
            execution_is_default=execution is None,
        )

    async def _load_blobs(self, user: User) -> CredentialBlobs:
        try:
            cached = await self.cache.get(user.id)
            if cached is not None:
                return cached
            generation = await self.cache.generation(user.id)
        except Exception as exc:
            self.logger.warning("credential_cache_unavailable", user_id=user.id, error=str(exc))
            cached, generation = None, None

        fresh = self.store.get_user(user.id) or user
        blobs: CredentialBlobs = (
            fresh.encrypted_completion_credential,
            fresh.encrypted_execution_credential,
        )
        if generation is not None:
            try:
                await self.cache.put(user.id, blobs, generation=generation)
            except Exception as exc:
                self.logger.warning("credential_cache_fill_failed", user_id=user.id, error=str(exc))
        return blobs

    def _decrypt(self, user_id: str, kind: str, blob: Optional[str]) -> Optional[str]:
        if not blob:
            return None
        try:
            return self.vault.decrypt_or_raise(blob)
        except CorruptCredentialError as exc:
            self.logger.warning(
                "credential_decrypt_failed",
                user_id=user_id,
                kind=kind,
                reason=exc.message,
            )
            return None


@dataclass(frozen=True)
class CredentialStatus:
    registered: bool
    has_keys: bool
    tier: Optional[Tier]


class CredentialManager:
    """Activate, revoke and report a user's personal API keys."""

    def __init__(
        self,
        store: UserStore,
        vault: CredentialVault,
        cache: CredentialCache,
        settings: Settings,
    ) -> None:
        self.store = store
        self.vault = vault
        self.cache = cache
        self.settings = settings
        self.logger = get_logger(__name__)

    def _find_or_create(self, chat_id: str, display_name: Optional[str]) -> User:
        user = self.store.find_user_by_external_id(chat_id)
        if user is not None:
            return user
        try:
            return self.store.create_user(
                User.new(
                    chat_id,
                    display_name,
                    message_quota=tier_quota(Tier.FREE),
                    quota_period_days=self.settings.quota_period_days,
                )
            )
        except ConstraintViolation:
            existing = self.store.find_user_by_external_id(chat_id)
            if existing is None:
                raise
            return existing

    async def activate(
        self,
        chat_id: str,
        completion_key: str,
        execution_key: str,
        *,
        display_name: Optional[str] = None,
    ) -> User:
        chat_id = str(chat_id).strip()
        if not chat_id:
            raise ValidationError("telegram_chat_id is required")
        completion_key = validate_completion_key(completion_key)
        execution_key = validate_execution_key(execution_key)

        user: Optional[User] = None
        try:
            user = self._find_or_create(chat_id, display_name)
            user = self.store.update_user(
                user.id,
                SetCredentials(
                    encrypted_completion_credential=self.vault.encrypt(completion_key),
                    encrypted_execution_credential=self.vault.encrypt(execution_key),
                    tier_change=ChangeTier(Tier.BASIC, tier_quota(Tier.BASIC)),
                ),
            )
        except Exception as exc:
            self._log(user.id if user else None, "api_keys_activation_failed", exc)
            raise
        finally:
            if user is not None:
                await self.cache.invalidate(user.id)
        self._log(user.id, "api_keys_activated")
        self.logger.info("api_keys_activated", user_id=user.id, tier=user.tier.value)
        return user

    async def revoke(self, chat_id: str) -> User:
        user = self.store.find_user_by_external_id(str(chat_id))
        if user is None:
            self._log(None, "api_keys_revoke_failed", NotFoundError("user not found"))
            raise NotFoundError("User not found", detail={"telegram_chat_id": str(chat_id)})
        try:
            user = self.store.update_user(
                user.id, ClearCredentials(tier_change=ChangeTier(Tier.FREE, tier_quota(Tier.FREE)))
            )
        except Exception as exc:
            self._log(user.id, "api_keys_revoke_failed", exc)
            raise
        finally:
            await self.cache.invalidate(user.id)
        self._log(user.id, "api_keys_revoked")
        self.logger.info("api_keys_revoked", user_id=user.id)
        return user

    def status(self, chat_id: str) -> CredentialStatus:
        user = self.store.find_user_by_external_id(str(chat_id))
        if user is None:
            return CredentialStatus(registered=False, has_keys=False, tier=None)
        return CredentialStatus(registered=True, has_keys=user.has_credentials, tier=user.tier)

    def _log(self, user_id: Optional[str], operation: str, exc: Optional[Exception] = None) -> None:
        try:
            self.store.log_usage(
                UsageLog(
                    operation_type=operation,
                    success=exc is None,
                    user_id=user_id,
                    error_message=sanitize_error_message(exc) if exc else None,
                )
            )
        except Exception as log_exc:
            self.logger.warning("usage_log_write_failed", operation=operation, error=str(log_exc))
