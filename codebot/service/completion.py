from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from codebot.logging import get_logger
from codebot.service.errors import CompletionError, ProviderTimeout
from codebot.service.operations import Operation, parse_operations
from codebot.service.prompts import SYSTEM_PROMPT
from codebot.service.retry import RetryPolicy

logger = get_logger(__name__)

STATUS_COMPLETE = "complete"
STATUS_IN_PROGRESS = "in_progress"

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_ANY_FENCE = re.compile(r"```\s*([\s\S]*?)\s*```")
_BRACES = re.compile(r"\{[\s\S]*\}")


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str


@dataclass
class CompletionResult:
    reply_text: str
    operations: List[Operation] = field(default_factory=list)
    status: str = STATUS_COMPLETE
    tokens_used: Optional[int] = None

    @property
    def in_progress(self) -> bool:
        return self.status == STATUS_IN_PROGRESS


class CompletionProvider(Protocol):
    async def converse(
        self, prompt: str, history: Sequence[ChatTurn], credential: Optional[str]
    ) -> CompletionResult: ...


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Pull a JSON object out of model output.

    Tries a ```json fence, then any fence, then the outermost ``{...}``
    span, then the whole text.
    """
    candidates: List[str] = []
    for pattern in (_JSON_FENCE, _ANY_FENCE):
        match = pattern.search(text)
        if match:
            candidates.append(match.group(1))
    match = _BRACES.search(text)
    if match:
        candidates.append(match.group(0))
    candidates.append(text)
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


EMPTY_REPLY_TEXT = "✅ Done."


def parse_structured_reply(text: str, tokens_used: Optional[int] = None) -> CompletionResult:
    payload = extract_json_object(text)
    if payload is None:
        return CompletionResult(reply_text=text, tokens_used=tokens_used)

    reply = payload.get("response")
    operations = parse_operations(payload.get("operations"))
    if isinstance(reply, str) and reply.strip():
        reply_text = reply
    elif operations:
        reply_text = f"⚙️ Running {len(operations)} operation(s)..."
    else:
        reply_text = EMPTY_REPLY_TEXT
    if operations:
        status = payload.get("status") or STATUS_IN_PROGRESS
    else:
        status = STATUS_COMPLETE
    if status not in (STATUS_COMPLETE, STATUS_IN_PROGRESS):
        status = STATUS_COMPLETE
    return CompletionResult(
        reply_text=reply_text,
        operations=operations,
        status=status,
        tokens_used=tokens_used,
    )


def _is_transient_http_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, httpx.TransportError)


_GEMINI_STATUS_MESSAGES = {
    400: "Invalid request to Gemini API",
    401: "Authentication failed with Gemini API",
    403: "Access forbidden to Gemini API",
    429: "Rate limit exceeded for Gemini API",
}


class GeminiCompletionProvider:
    """Gemini ``generateContent`` over httpx with bounded retries."""

    def __init__(
        self,
        *,
        model: str = "gemini-2.5-flash-lite",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        system_prompt: str = SYSTEM_PROMPT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self.base_url = (base_url or GEMINI_API_BASE).rstrip("/")
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.system_prompt = system_prompt
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def _build_body(self, prompt: str, history: Sequence[ChatTurn]) -> Dict[str, Any]:
        contents = []
        for turn in history:
            if turn.role == "system":
                continue
            role = "model" if turn.role == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": turn.content}]})
        contents.append({"role": "user", "parts": [{"text": prompt}]})
        return {
            "systemInstruction": {"parts": [{"text": self.system_prompt}]},
            "contents": contents,
            "generationConfig": {
                "temperature": 0.7,
                "topK": 40,
                "topP": 0.95,
                "maxOutputTokens": 8192,
            },
        }

    async def _call(self, body: Dict[str, Any], credential: str) -> Dict[str, Any]:
        response = await self._client.post(
            self.endpoint,
            json=body,
            headers={"x-goog-api-key": credential, "Content-Type": "application/json"},
        )
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as exc:
            raise CompletionError("Invalid response structure from Gemini API") from exc
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text:
            raise CompletionError("Empty response text from Gemini API")
        return text

    @staticmethod
    def _extract_tokens(data: Dict[str, Any]) -> Optional[int]:
        usage = data.get("usageMetadata")
        if not isinstance(usage, dict):
            return None
        return int(usage.get("promptTokenCount", 0) or 0) + int(
            usage.get("candidatesTokenCount", 0) or 0
        )

    async def converse(
        self, prompt: str, history: Sequence[ChatTurn], credential: Optional[str]
    ) -> CompletionResult:
        if not credential:
            raise CompletionError("no completion credential configured")
        body = self._build_body(prompt, history)
        try:
            data = await self.retry_policy.run(
                lambda: self._call(body, credential),
                retry_on=(httpx.HTTPError,),
                should_retry=_is_transient_http_error,
                name="gemini_generate_content",
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeout("Gemini API request timed out") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            message = _GEMINI_STATUS_MESSAGES.get(status, f"Gemini API error ({status})")
            raise CompletionError(message, detail={"status": status}) from exc
        except httpx.HTTPError as exc:
            raise CompletionError("Cannot reach Gemini API") from exc
        return parse_structured_reply(self._extract_text(data), self._extract_tokens(data))

    async def close(self) -> None:
        await self._client.aclose()


_OPENAI_TRANSIENT = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class OpenAICompletionProvider:
    """Chat-completions backend for OpenAI-compatible endpoints."""

    def __init__(
        self,
        *,
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.system_prompt = system_prompt

    def _build_messages(self, prompt: str, history: Sequence[ChatTurn]) -> List[dict]:
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(
            {"role": turn.role, "content": turn.content}
            for turn in history
            if turn.role != "system"
        )
        messages.append({"role": "user", "content": prompt})
        return messages

    async def converse(
        self, prompt: str, history: Sequence[ChatTurn], credential: Optional[str]
    ) -> CompletionResult:
        if not credential:
            raise CompletionError("no completion credential configured")
        messages = self._build_messages(prompt, history)
        # Retries are driven by RetryPolicy, not the SDK
        client = AsyncOpenAI(
            api_key=credential, base_url=self.base_url, timeout=self.timeout, max_retries=0
        )
        try:
            completion = await self.retry_policy.run(
                lambda: client.chat.completions.create(
                    model=self.model, messages=messages, temperature=0.7
                ),
                retry_on=_OPENAI_TRANSIENT,
                name="openai_chat_completion",
            )
        except openai.APITimeoutError as exc:
            raise ProviderTimeout("completion request timed out") from exc
        except openai.OpenAIError as exc:
            raise CompletionError(f"completion request failed: {type(exc).__name__}") from exc
        finally:
            await client.close()

        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        content = (first_choice.message.content or "") if first_choice else ""
        if not content:
            raise CompletionError("completion returned no content")
        usage = getattr(completion, "usage", None)
        tokens = getattr(usage, "total_tokens", None) if usage else None
        return parse_structured_reply(content, tokens)
