from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from codebot.config import CompletionBackend, Settings, get_settings, reset_settings_cache
from codebot.logging import get_logger
from codebot.service.auth import AuthenticationGate
from codebot.service.completion import GeminiCompletionProvider, OpenAICompletionProvider
from codebot.service.credentials import CredentialCache, CredentialManager, CredentialResolver
from codebot.service.executor import RemoteSandboxExecutor
from codebot.service.maintenance import MaintenanceService
from codebot.service.orchestrator import ConversationOrchestrator
from codebot.service.pipeline import MessagePipeline
from codebot.service.quota import QuotaGate
from codebot.service.retry import RetryPolicy
from codebot.service.telegram import TelegramTransport
from codebot.service.transport import OutboxTransport
from codebot.service.vault import CredentialVault
from codebot.storage.memory import MemoryStore
from codebot.storage.postgres import PostgresStore
from codebot.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# Only ever used when TEST_MODE is on and no ENCRYPTION_KEY is configured
_TEST_MODE_ENCRYPTION_KEY = "codebot-test-mode-encryption-key"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


def _build_vault(settings: Settings) -> CredentialVault:
    if settings.credential_encryption_key:
        return CredentialVault(settings.credential_encryption_key)
    if not settings.test_mode:
        raise RuntimeError(
            "ENCRYPTION_KEY is required to store user API keys; set it to 64 hex "
            "characters (or any passphrase) before starting."
        )
    logger.warning(
        "encryption_key_missing_test_mode",
        message="Using a fixed development key; stored credentials are not protected.",
    )
    return CredentialVault(_TEST_MODE_ENCRYPTION_KEY)


class Runtime:
    """Holds the singleton service graph for the bot and the admin API."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(state_dir=self.settings.state_dir)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the shared credential cache; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.vault = _build_vault(self.settings)
        self.credential_cache = CredentialCache(
            self.settings.credential_cache_ttl_seconds, redis=self.cache
        )
        self.resolver = CredentialResolver(
            self.store,
            self.vault,
            self.credential_cache,
            default_completion=self.settings.default_completion_key,
            default_execution=self.settings.default_execution_key,
        )
        self.credentials = CredentialManager(
            self.store, self.vault, self.credential_cache, self.settings
        )
        self.quota_gate = QuotaGate()

        self.transport: Union[TelegramTransport, OutboxTransport]
        if self.settings.telegram_bot_token and not self.settings.test_mode:
            self.transport = TelegramTransport(
                self.settings.telegram_bot_token,
                self.settings,
                store=self.store,
                credentials=self.credentials,
                quota_gate=self.quota_gate,
            )
        else:
            self.transport = OutboxTransport()

        self.auth = AuthenticationGate(
            self.store, self.transport, self.settings, quota_gate=self.quota_gate
        )
        retry_policy = RetryPolicy.from_settings(self.settings)
        if self.settings.completion_backend is CompletionBackend.OPENAI:
            self.completion: Union[GeminiCompletionProvider, OpenAICompletionProvider] = (
                OpenAICompletionProvider(
                    model=self.settings.completion_model,
                    base_url=self.settings.completion_base_url,
                    timeout=self.settings.provider_timeout_seconds,
                    retry_policy=retry_policy,
                )
            )
        else:
            self.completion = GeminiCompletionProvider(
                model=self.settings.completion_model,
                base_url=self.settings.completion_base_url,
                timeout=self.settings.provider_timeout_seconds,
                retry_policy=retry_policy,
            )
        self.executor = RemoteSandboxExecutor(
            base_url=self.settings.execution_base_url,
            template=self.settings.execution_template,
            operation_timeout=self.settings.operation_timeout_seconds,
            request_timeout=self.settings.provider_timeout_seconds,
        )
        self.orchestrator = ConversationOrchestrator(
            self.store, self.resolver, self.completion, self.executor, self.settings
        )
        self.pipeline = MessagePipeline(self.auth, self.orchestrator, self.transport)
        if isinstance(self.transport, TelegramTransport):
            self.transport.bind(self.pipeline)
        self.maintenance = MaintenanceService(self.store, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
            completion_backend=self.settings.completion_backend.value,
            transport=type(self.transport).__name__,
            default_completion_key=bool(self.settings.default_completion_key),
            default_execution_key=bool(self.settings.default_execution_key),
        )

    async def close(self) -> None:
        """Release network clients and pools."""
        for closer in (
            getattr(self.completion, "close", None),
            self.executor.close,
            self.cache.close if self.cache else None,
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a freshly read environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
