import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from codebot.service.errors import ExecutionError
from codebot.service.executor import RemoteSandboxExecutor
from codebot.service.operations import BrowserAction, ReadFile, TerminalCommand, WriteFile


class FakeGateway:
    def __init__(self, *, fail_provision=False, fail_delete=False, slow_commands=False):
        self.fail_provision = fail_provision
        self.fail_delete = fail_delete
        self.slow_commands = slow_commands
        self.requests = []
        self.files = {}

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        assert request.headers["X-API-Key"] == "e2b-key"
        if request.method == "POST" and path == "/sandboxes":
            if self.fail_provision:
                return httpx.Response(500, json={"error": "no capacity"})
            return httpx.Response(201, json={"sandboxID": "sbx-1"})
        if request.method == "DELETE":
            if self.fail_delete:
                return httpx.Response(500)
            return httpx.Response(204)
        body = json.loads(request.content) if request.content else {}
        if path.endswith("/commands"):
            if self.slow_commands:
                await asyncio.sleep(5)
            if body["cmd"] == "false":
                return httpx.Response(200, json={"stdout": "", "stderr": "", "exitCode": 1})
            if body["cmd"] == "explode":
                return httpx.Response(500)
            if body["cmd"] == "garbled":
                return httpx.Response(200, json={"stdout": "", "exitCode": [1]})
            if body["cmd"] == "listed":
                return httpx.Response(200, json=["not", "an", "object"])
            return httpx.Response(200, json={"stdout": f"ran {body['cmd']}\n", "stderr": "", "exitCode": 0})
        if path.endswith("/files") and request.method == "POST":
            self.files[body["path"]] = body["content"]
            return httpx.Response(200, json={})
        if path.endswith("/files") and request.method == "GET":
            name = request.url.params["path"]
            if name == "empty.txt":
                return httpx.Response(200, json={"content": None})
            if name not in self.files:
                return httpx.Response(404)
            return httpx.Response(200, json={"content": self.files[name]})
        if path.endswith("/browser"):
            return httpx.Response(
                200, json={"url": body.get("url"), "screenshotUrl": "https://cdn/shot.png"}
            )
        return httpx.Response(404)

    @property
    def deleted(self):
        return ("DELETE", "/sandboxes/sbx-1") in self.requests


def _executor(gateway, **kwargs):
    return RemoteSandboxExecutor(
        base_url="https://sandbox.test", transport=httpx.MockTransport(gateway), **kwargs
    )


async def test_batch_runs_in_order_and_tears_down():
    gateway = FakeGateway()
    executor = _executor(gateway)

    results = await executor.run(
        [
            WriteFile(path="hello.py", content="print('hi')"),
            TerminalCommand(command="python hello.py"),
            ReadFile(path="hello.py"),
            BrowserAction(action="navigate", url="https://example.com"),
        ],
        "e2b-key",
    )
    await executor.close()

    assert [r.operation for r in results] == [
        "write_file",
        "terminal_command",
        "read_file",
        "browser_action",
    ]
    assert all(r.success for r in results)
    assert results[1].stdout == "ran python hello.py\n"
    assert results[2].content == "print('hi')"
    assert results[3].screenshot_url == "https://cdn/shot.png"
    assert gateway.requests[0] == ("POST", "/sandboxes")
    assert gateway.requests[-1] == ("DELETE", "/sandboxes/sbx-1")


async def test_failures_do_not_stop_the_batch():
    gateway = FakeGateway()
    executor = _executor(gateway)

    results = await executor.run(
        [
            TerminalCommand(command="false"),
            TerminalCommand(command="explode"),
            ReadFile(path="missing.txt"),
            SimpleNamespace(type="launch_rocket"),
            TerminalCommand(command="echo ok"),
        ],
        "e2b-key",
    )
    await executor.close()

    assert [r.success for r in results] == [False, False, False, False, True]
    assert results[0].exit_code == 1
    assert results[1].error == "Sandbox gateway returned 500"
    assert results[3].error == "Unknown operation type: launch_rocket"
    assert gateway.deleted


async def test_malformed_gateway_replies_do_not_stop_the_batch():
    gateway = FakeGateway()
    executor = _executor(gateway)

    results = await executor.run(
        [
            ReadFile(path="empty.txt"),
            TerminalCommand(command="garbled"),
            TerminalCommand(command="listed"),
            TerminalCommand(command="echo ok"),
        ],
        "e2b-key",
    )
    await executor.close()

    assert len(results) == 4
    assert results[0].success and results[0].content == "" and results[0].size == 0
    assert not results[1].success
    assert results[1].error == "Unexpected sandbox reply: TypeError"
    assert not results[2].success
    assert "expected a JSON object" in results[2].error
    assert results[3].success and results[3].stdout == "ran echo ok\n"
    assert gateway.deleted


async def test_operation_timeout_becomes_failed_result():
    gateway = FakeGateway(slow_commands=True)
    executor = _executor(gateway, operation_timeout=0.05)

    results = await executor.run([TerminalCommand(command="sleep 100")], "e2b-key")
    await executor.close()

    assert not results[0].success
    assert "Timed out" in results[0].error
    assert gateway.deleted


async def test_teardown_runs_when_batch_is_cancelled():
    gateway = FakeGateway(slow_commands=True)
    executor = _executor(gateway, operation_timeout=30)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(
            executor.run([TerminalCommand(command="sleep 100")], "e2b-key"), timeout=0.05
        )
    await asyncio.sleep(0.01)
    await executor.close()

    assert gateway.deleted


async def test_teardown_failure_is_swallowed():
    gateway = FakeGateway(fail_delete=True)
    executor = _executor(gateway)

    results = await executor.run([TerminalCommand(command="echo hi")], "e2b-key")
    await executor.close()

    assert results[0].success


async def test_provision_failure_raises_execution_error():
    gateway = FakeGateway(fail_provision=True)
    executor = _executor(gateway)

    with pytest.raises(ExecutionError):
        await executor.run([TerminalCommand(command="echo hi")], "e2b-key")
    await executor.close()

    assert not gateway.deleted


async def test_missing_credential_is_an_execution_error():
    executor = _executor(FakeGateway())
    with pytest.raises(ExecutionError):
        await executor.run([TerminalCommand(command="ls")], None)
    await executor.close()
