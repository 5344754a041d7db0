from __future__ import annotations

import asyncio
import json
import re
from typing import List, Optional, Sequence

from codebot.config import Settings
from codebot.logging import get_logger, sanitize_error_message
from codebot.service import notices
from codebot.service.completion import ChatTurn, CompletionProvider, CompletionResult
from codebot.service.credentials import CredentialResolver
from codebot.service.errors import ProviderTimeout, ValidationError
from codebot.service.executor import OperationExecutor
from codebot.service.operations import (
    Operation,
    OperationResult,
    format_operation_results,
    summarize_results,
)
from codebot.service.prompts import FOLLOW_UP_PROMPT, results_turn
from codebot.storage.common import UserStore
from codebot.storage.models import Conversation, MessageRole, UsageLog, User

logger = get_logger(__name__)

# Best-effort guard against obviously destructive requests. Not a security
# boundary: the sandbox is.
DENY_PATTERNS = (
    re.compile(r"rm\s+-rf\s+/", re.IGNORECASE),
    re.compile(r"format\s+c:", re.IGNORECASE),
    re.compile(r"\.\./\.\./"),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"exec\s*\(", re.IGNORECASE),
)


def validate_message(text: Optional[str], max_chars: int = 8000) -> str:
    if text is None or not text.strip():
        raise ValidationError("Empty message. Please provide a valid request.")
    if len(text) > max_chars:
        raise ValidationError(
            f"Message is too long. Please keep requests under {max_chars} characters."
        )
    for pattern in DENY_PATTERNS:
        if pattern.search(text):
            raise ValidationError(
                "Potentially dangerous command detected. Please rephrase your request."
            )
    return text


def thread_key(chat_id: str) -> str:
    return f"telegram_{chat_id}"


class ConversationOrchestrator:
    """One inbound message through completion, execution and summary.

    At most two completion calls happen per message: the first, and a
    single follow-up when the provider asked to see operation results.
    Persistence of turns and usage rows is best effort; everything else
    that fails after validation yields a generic reply.
    """

    def __init__(
        self,
        store: UserStore,
        resolver: CredentialResolver,
        completion: CompletionProvider,
        executor: OperationExecutor,
        settings: Settings,
        *,
        completion_timeout: Optional[float] = None,
        execution_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.completion = completion
        self.executor = executor
        self.settings = settings
        # Covers the provider's own retries: every attempt plus the waits between them
        self.completion_timeout = completion_timeout or (
            settings.provider_timeout_seconds * settings.retry_max_attempts
            + settings.retry_max_delay * (settings.retry_max_attempts - 1)
        )
        self.execution_timeout = execution_timeout or settings.execution_timeout_seconds

    async def handle(self, chat_id: str, text: str, user: User) -> str:
        try:
            validate_message(text, self.settings.max_message_chars)
        except ValidationError as exc:
            logger.info("message_rejected", user_id=user.id, reason=exc.message)
            return exc.user_message

        conversation = self._resolve_conversation(user, chat_id)
        history = self._load_history(conversation)

        try:
            credentials = await self.resolver.resolve(user)
            self._persist(conversation, MessageRole.USER, text)

            first = await self._converse(text, history, credentials.completion)
            reply = first.reply_text
            reply_tokens = first.tokens_used
            total_tokens = first.tokens_used or 0

            if first.operations:
                results = await self._execute(first.operations, credentials.execution)
                failure_summary = summarize_results(results)
                self._log_usage(
                    user,
                    "operation_batch",
                    success=failure_summary is None,
                    error_message=failure_summary,
                )
                if first.in_progress:
                    follow_up_history = list(history) + [
                        ChatTurn(MessageRole.USER.value, text),
                        ChatTurn(MessageRole.ASSISTANT.value, self._serialize_turn(first)),
                        ChatTurn(MessageRole.USER.value, results_turn(format_operation_results(results))),
                    ]
                    final = await self._converse(
                        FOLLOW_UP_PROMPT, follow_up_history, credentials.completion
                    )
                    if final.operations:
                        logger.warning(
                            "follow_up_operations_ignored",
                            user_id=user.id,
                            count=len(final.operations),
                        )
                    total_tokens += final.tokens_used or 0
                    if final.reply_text.strip():
                        reply = final.reply_text
                        reply_tokens = final.tokens_used

            self._log_usage(
                user, "completion_request", success=True, tokens_used=total_tokens or None
            )
            self._persist(conversation, MessageRole.ASSISTANT, reply, reply_tokens)
            return reply
        except Exception as exc:
            logger.error(
                "message_processing_failed",
                user_id=user.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._log_usage(
                user,
                "message_processing_error",
                success=False,
                error_message=sanitize_error_message(exc),
            )
            return notices.GENERIC_ERROR

    async def _converse(
        self, prompt: str, history: Sequence[ChatTurn], credential: Optional[str]
    ) -> CompletionResult:
        try:
            return await asyncio.wait_for(
                self.completion.converse(prompt, history, credential),
                timeout=self.completion_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout("completion call timed out") from exc

    async def _execute(
        self, operations: List[Operation], credential: Optional[str]
    ) -> List[OperationResult]:
        try:
            return await asyncio.wait_for(
                self.executor.run(operations, credential), timeout=self.execution_timeout
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout("operation batch timed out") from exc

    @staticmethod
    def _serialize_turn(result: CompletionResult) -> str:
        return json.dumps(
            {
                "status": result.status,
                "response": result.reply_text,
                "operations": [op.model_dump(exclude_none=True) for op in result.operations],
            }
        )

    def _resolve_conversation(self, user: User, chat_id: str) -> Optional[Conversation]:
        try:
            return self.store.find_or_create_conversation(user.id, thread_key(chat_id))
        except Exception as exc:
            logger.error("conversation_resolve_failed", user_id=user.id, error=str(exc))
            return None

    def _load_history(self, conversation: Optional[Conversation]) -> List[ChatTurn]:
        if conversation is None:
            return []
        try:
            messages = self.store.recent_messages(conversation.id, self.settings.history_limit)
        except Exception as exc:
            logger.warning(
                "history_load_failed", conversation_id=conversation.id, error=str(exc)
            )
            return []
        return [
            ChatTurn(m.role.value, m.content)
            for m in messages
            if m.role is not MessageRole.SYSTEM
        ]

    def _persist(
        self,
        conversation: Optional[Conversation],
        role: MessageRole,
        content: str,
        tokens_used: Optional[int] = None,
    ) -> None:
        if conversation is None:
            return
        try:
            self.store.append_message(conversation.id, role, content, tokens_used)
        except Exception as exc:
            logger.error(
                "message_persist_failed",
                conversation_id=conversation.id,
                role=role.value,
                error=str(exc),
            )

    def _log_usage(
        self,
        user: User,
        operation_type: str,
        *,
        success: bool,
        tokens_used: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        try:
            self.store.log_usage(
                UsageLog(
                    operation_type=operation_type,
                    success=success,
                    user_id=user.id,
                    tokens_used=tokens_used,
                    error_message=error_message,
                )
            )
        except Exception as exc:
            logger.error("usage_log_write_failed", operation=operation_type, error=str(exc))
