from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from codebot.logging import get_logger
from codebot.service.errors import ExecutionError
from codebot.service.operations import (
    BrowserAction,
    Operation,
    OperationResult,
    ReadFile,
    TerminalCommand,
    WriteFile,
)

logger = get_logger(__name__)


def _json_object(response: httpx.Response) -> Dict[str, Any]:
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(
            f"expected a JSON object from the sandbox gateway, got {type(data).__name__}"
        )
    return data


class OperationExecutor(Protocol):
    async def run(
        self, operations: Sequence[Operation], credential: Optional[str]
    ) -> List[OperationResult]: ...


class RemoteSandboxExecutor:
    """Runs a batch of operations inside one freshly provisioned sandbox.

    Gateway contract (JSON over HTTPS, ``X-API-Key`` auth):

    - ``POST /sandboxes`` -> ``{"sandboxID": ...}``
    - ``POST /sandboxes/{id}/commands`` -> ``{"stdout", "stderr", "exitCode"}``
    - ``POST /sandboxes/{id}/files`` writes, ``GET /sandboxes/{id}/files?path=`` reads
    - ``POST /sandboxes/{id}/browser`` -> ``{"url", "screenshotUrl"}``
    - ``DELETE /sandboxes/{id}``

    Operations run sequentially. A failing or timed-out operation becomes
    a failed result and the batch carries on. The sandbox is deleted on
    every exit path; a failed delete is logged and otherwise ignored.
    """

    def __init__(
        self,
        *,
        base_url: str = "https://api.e2b.app",
        template: str = "base",
        operation_timeout: float = 30.0,
        request_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.template = template
        self.operation_timeout = operation_timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=request_timeout, transport=transport
        )

    @staticmethod
    def _headers(credential: str) -> Dict[str, str]:
        return {"X-API-Key": credential, "Content-Type": "application/json"}

    async def run(
        self, operations: Sequence[Operation], credential: Optional[str]
    ) -> List[OperationResult]:
        if not credential:
            raise ExecutionError("no execution credential configured")
        sandbox_id = await self._provision(credential)
        results: List[OperationResult] = []
        try:
            for operation in operations:
                results.append(await self._run_one(sandbox_id, operation, credential))
        finally:
            # Shielded so a second cancellation cannot abandon the delete
            await asyncio.shield(self._teardown(sandbox_id, credential))
        succeeded = sum(1 for r in results if r.success)
        logger.info(
            "operation_batch_completed",
            sandbox_id=sandbox_id,
            succeeded=succeeded,
            total=len(results),
        )
        return results

    async def _provision(self, credential: str) -> str:
        try:
            response = await self._client.post(
                "/sandboxes",
                json={"templateID": self.template},
                headers=self._headers(credential),
            )
            response.raise_for_status()
            sandbox_id = _json_object(response).get("sandboxID")
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("sandbox_provision_failed", error=str(exc))
            raise ExecutionError("Failed to create sandbox environment") from exc
        if not sandbox_id:
            raise ExecutionError("sandbox gateway returned no sandbox id")
        logger.info("sandbox_provisioned", sandbox_id=sandbox_id)
        return str(sandbox_id)

    async def _teardown(self, sandbox_id: str, credential: str) -> None:
        try:
            response = await self._client.delete(
                f"/sandboxes/{sandbox_id}", headers=self._headers(credential)
            )
            response.raise_for_status()
        except Exception as exc:
            logger.warning("sandbox_teardown_failed", sandbox_id=sandbox_id, error=str(exc))
            return
        logger.info("sandbox_deleted", sandbox_id=sandbox_id)

    async def _run_one(
        self, sandbox_id: str, operation: Any, credential: str
    ) -> OperationResult:
        op_type = getattr(operation, "type", None) or type(operation).__name__
        handler = {
            "terminal_command": self._terminal_command,
            "write_file": self._write_file,
            "read_file": self._read_file,
            "browser_action": self._browser_action,
        }.get(op_type)
        if handler is None:
            logger.warning("unknown_operation_type", type=op_type)
            return OperationResult.failed(op_type, f"Unknown operation type: {op_type}")

        timeout = self.operation_timeout
        if isinstance(operation, TerminalCommand) and operation.timeout:
            timeout = min(operation.timeout, self.operation_timeout)
        try:
            return await asyncio.wait_for(
                handler(sandbox_id, operation, credential), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning("operation_timed_out", type=op_type, timeout=timeout)
            return OperationResult.failed(op_type, f"Timed out after {timeout:g}s")
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "operation_failed", type=op_type, status=exc.response.status_code
            )
            return OperationResult.failed(
                op_type, f"Sandbox gateway returned {exc.response.status_code}"
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("operation_failed", type=op_type, error=str(exc))
            return OperationResult.failed(op_type, str(exc) or type(exc).__name__)
        except Exception as exc:
            logger.warning(
                "operation_malformed_reply",
                type=op_type,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return OperationResult.failed(
                op_type, f"Unexpected sandbox reply: {type(exc).__name__}"
            )

    async def _post(self, path: str, payload: dict, credential: str) -> Dict[str, Any]:
        response = await self._client.post(path, json=payload, headers=self._headers(credential))
        response.raise_for_status()
        return _json_object(response) if response.content else {}

    async def _terminal_command(
        self, sandbox_id: str, op: TerminalCommand, credential: str
    ) -> OperationResult:
        data = await self._post(
            f"/sandboxes/{sandbox_id}/commands",
            {"cmd": op.command, "timeout": op.timeout or self.operation_timeout},
            credential,
        )
        exit_code = int(data.get("exitCode", data.get("exit_code", 0)) or 0)
        return OperationResult(
            operation=op.type,
            success=exit_code == 0,
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
            exit_code=exit_code,
            error=None if exit_code == 0 else f"Command exited with code {exit_code}",
        )

    async def _write_file(
        self, sandbox_id: str, op: WriteFile, credential: str
    ) -> OperationResult:
        await self._post(
            f"/sandboxes/{sandbox_id}/files",
            {"path": op.path, "content": op.content},
            credential,
        )
        return OperationResult(
            operation=op.type, success=True, path=op.path, size=len(op.content)
        )

    async def _read_file(
        self, sandbox_id: str, op: ReadFile, credential: str
    ) -> OperationResult:
        response = await self._client.get(
            f"/sandboxes/{sandbox_id}/files",
            params={"path": op.path},
            headers=self._headers(credential),
        )
        response.raise_for_status()
        content = _json_object(response).get("content") or ""
        return OperationResult(
            operation=op.type, success=True, path=op.path, content=content, size=len(content)
        )

    async def _browser_action(
        self, sandbox_id: str, op: BrowserAction, credential: str
    ) -> OperationResult:
        payload = {
            key: value
            for key, value in {
                "action": op.action,
                "url": op.url,
                "selector": op.selector,
                "text": op.text,
            }.items()
            if value is not None
        }
        data = await self._post(f"/sandboxes/{sandbox_id}/browser", payload, credential)
        return OperationResult(
            operation=op.type,
            success=True,
            url=data.get("url", op.url),
            screenshot_url=data.get("screenshotUrl"),
        )

    async def close(self) -> None:
        await self._client.aclose()
