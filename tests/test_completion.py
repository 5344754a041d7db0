import json

import httpx
import pytest

from codebot.service.completion import (
    EMPTY_REPLY_TEXT,
    ChatTurn,
    GeminiCompletionProvider,
    extract_json_object,
    parse_structured_reply,
)
from codebot.service.errors import CompletionError, ProviderTimeout
from codebot.service.operations import TerminalCommand, WriteFile
from codebot.service.retry import RetryPolicy


async def _no_sleep(_delay):
    return None


def _gemini_payload(text, prompt_tokens=10, output_tokens=5):
    return {
        "candidates": [{"content": {"parts": [{"text": text}]}}],
        "usageMetadata": {"promptTokenCount": prompt_tokens, "candidatesTokenCount": output_tokens},
    }


def _provider(handler):
    return GeminiCompletionProvider(
        model="gemini-test",
        retry_policy=RetryPolicy(sleep=_no_sleep),
        transport=httpx.MockTransport(handler),
    )


def test_extracts_json_from_fenced_block():
    text = 'Sure!\n```json\n{"response": "hi", "status": "complete"}\n```'
    assert extract_json_object(text) == {"response": "hi", "status": "complete"}


def test_extracts_first_brace_span():
    assert extract_json_object('prefix {"response": "x"} suffix') == {"response": "x"}


def test_plain_text_is_a_complete_reply():
    result = parse_structured_reply("Just words", tokens_used=3)
    assert result.reply_text == "Just words"
    assert result.operations == []
    assert result.status == "complete"
    assert result.tokens_used == 3


def test_operations_default_to_in_progress():
    payload = {
        "response": "Creating file",
        "operations": [
            {"type": "write_file", "path": "a.py", "content": "print(1)"},
            {"type": "terminal_command", "command": "python a.py"},
        ],
    }
    result = parse_structured_reply(json.dumps(payload))
    assert result.in_progress
    assert result.operations == [
        WriteFile(path="a.py", content="print(1)"),
        TerminalCommand(command="python a.py"),
    ]


def test_unknown_and_malformed_operations_are_dropped():
    payload = {
        "response": "mixed",
        "status": "in_progress",
        "operations": [
            {"type": "launch_rocket"},
            {"type": "read_file"},
            {"type": "read_file", "path": "x.txt"},
            "not-a-dict",
        ],
    }
    result = parse_structured_reply(json.dumps(payload))
    assert [op.type for op in result.operations] == ["read_file"]


def test_empty_response_never_echoes_raw_json():
    raw = json.dumps({"status": "complete", "response": "", "operations": []})
    result = parse_structured_reply(raw)
    assert result.reply_text == EMPTY_REPLY_TEXT
    assert "{" not in result.reply_text

    raw = json.dumps(
        {"response": "  ", "operations": [{"type": "terminal_command", "command": "ls"}]}
    )
    result = parse_structured_reply(raw)
    assert result.reply_text == "⚙️ Running 1 operation(s)..."
    assert result.in_progress


async def test_gemini_request_shape_and_token_count():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_gemini_payload('{"response": "hello", "status": "complete"}'))

    provider = _provider(handler)
    result = await provider.converse(
        "hi", [ChatTurn("user", "before"), ChatTurn("assistant", "reply")], "AIza-test"
    )
    await provider.close()

    assert seen["url"].endswith("/models/gemini-test:generateContent")
    assert seen["key"] == "AIza-test"
    roles = [c["role"] for c in seen["body"]["contents"]]
    assert roles == ["user", "model", "user"]
    assert "systemInstruction" in seen["body"]
    assert result.reply_text == "hello"
    assert result.tokens_used == 15


async def test_gemini_retries_server_errors():
    calls = []

    def handler(request):
        calls.append(1)
        if len(calls) < 3:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(200, json=_gemini_payload("ok"))

    provider = _provider(handler)
    result = await provider.converse("hi", [], "key")
    await provider.close()

    assert len(calls) == 3
    assert result.reply_text == "ok"


async def test_gemini_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(401, json={"error": "bad key"})

    provider = _provider(handler)
    with pytest.raises(CompletionError) as excinfo:
        await provider.converse("hi", [], "key")
    await provider.close()

    assert len(calls) == 1
    assert "Authentication failed" in excinfo.value.message


async def test_gemini_timeout_maps_to_provider_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    provider = _provider(handler)
    with pytest.raises(ProviderTimeout):
        await provider.converse("hi", [], "key")
    await provider.close()


async def test_gemini_without_credential_fails_fast():
    provider = _provider(lambda request: httpx.Response(200, json=_gemini_payload("x")))
    with pytest.raises(CompletionError):
        await provider.converse("hi", [], None)
    await provider.close()


async def test_gemini_empty_candidates_is_an_error():
    provider = _provider(lambda request: httpx.Response(200, json={"candidates": []}))
    with pytest.raises(CompletionError):
        await provider.converse("hi", [], "key")
    await provider.close()
