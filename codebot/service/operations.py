"""Side-effecting operations requested by the completion provider."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from codebot.logging import get_logger

logger = get_logger(__name__)

READ_PREVIEW_CHARS = 500


class _OperationBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class TerminalCommand(_OperationBase):
    type: Literal["terminal_command"] = "terminal_command"
    command: str = Field(min_length=1)
    timeout: Optional[float] = Field(default=None, gt=0)


class WriteFile(_OperationBase):
    type: Literal["write_file"] = "write_file"
    path: str = Field(min_length=1)
    content: str = ""


class ReadFile(_OperationBase):
    type: Literal["read_file"] = "read_file"
    path: str = Field(min_length=1)


class BrowserAction(_OperationBase):
    type: Literal["browser_action"] = "browser_action"
    action: str = Field(min_length=1)
    url: Optional[str] = None
    selector: Optional[str] = None
    text: Optional[str] = None


Operation = Annotated[
    Union[TerminalCommand, WriteFile, ReadFile, BrowserAction],
    Field(discriminator="type"),
]

OPERATION_TYPES = ("terminal_command", "write_file", "read_file", "browser_action")

_operation_adapter: TypeAdapter = TypeAdapter(Operation)


@dataclass
class OperationResult:
    operation: str
    success: bool
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    exit_code: Optional[int] = None
    path: Optional[str] = None
    content: Optional[str] = None
    size: Optional[int] = None
    url: Optional[str] = None
    screenshot_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def failed(cls, operation: str, error: str, **fields: Any) -> "OperationResult":
        return cls(operation=operation, success=False, error=error, **fields)


def parse_operations(raw: Any) -> List[Operation]:
    """Validate the provider's raw operation list.

    Entries with an unknown ``type`` or missing required fields are
    dropped and logged; they are never executed.
    """
    if not isinstance(raw, list):
        return []
    operations: List[Operation] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict) or item.get("type") not in OPERATION_TYPES:
            logger.warning(
                "operation_dropped",
                index=index,
                type=item.get("type") if isinstance(item, dict) else type(item).__name__,
                reason="unknown_type",
            )
            continue
        try:
            operations.append(_operation_adapter.validate_python(item))
        except PydanticValidationError as exc:
            logger.warning(
                "operation_dropped",
                index=index,
                type=item.get("type"),
                reason="invalid_fields",
                errors=exc.error_count(),
            )
    return operations


def format_operation_results(results: Iterable[OperationResult]) -> str:
    """Render results as the text of the synthetic follow-up turn."""
    lines: List[str] = ["Operation Results:", ""]
    for index, result in enumerate(results, start=1):
        lines.append(f"{index}. {result.operation}")
        if not result.success:
            lines.append("Operation failed")
            if result.error:
                lines.append(f"Error: {result.error}")
            if result.stderr:
                lines.append(f"Errors/Warnings:\n```\n{result.stderr}\n```")
            if result.exit_code is not None:
                lines.append(f"Exit Code: {result.exit_code}")
            lines.append("")
            continue
        if result.operation == "terminal_command":
            lines.append("Command executed successfully")
            if result.stdout:
                lines.append(f"Output:\n```\n{result.stdout}\n```")
            if result.stderr:
                lines.append(f"Errors/Warnings:\n```\n{result.stderr}\n```")
            lines.append(f"Exit Code: {result.exit_code}")
        elif result.operation == "write_file":
            lines.append("File written successfully")
            lines.append(f"Path: {result.path}")
        elif result.operation == "read_file":
            lines.append("File read successfully")
            lines.append(f"Path: {result.path}")
            lines.append(f"Size: {result.size} characters")
            if result.content:
                preview = result.content[:READ_PREVIEW_CHARS]
                if len(result.content) > READ_PREVIEW_CHARS:
                    preview += "\n... (truncated)"
                lines.append(f"Content:\n```\n{preview}\n```")
        elif result.operation == "browser_action":
            lines.append("Browser action completed")
            lines.append(f"URL: {result.url}")
            lines.append(
                "Screenshot: " + ("[Available]" if result.screenshot_url else "Not available")
            )
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def summarize_results(results: List[OperationResult]) -> Optional[str]:
    """``None`` when everything succeeded, else ``"k/n operations failed"``."""
    failed = sum(1 for r in results if not r.success)
    if not failed:
        return None
    return f"{failed}/{len(results)} operations failed"
