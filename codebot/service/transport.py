from __future__ import annotations

from typing import List, Protocol, Tuple


class Transport(Protocol):
    """Outbound half of the chat platform as seen by the gates."""

    async def send_text(self, chat_id: str, text: str) -> None: ...


def chunk_text(text: str, size: int = 4000) -> List[str]:
    """Split ``text`` into pieces of at most ``size`` characters.

    Prefers breaking after a newline, then after a space, and only cuts
    mid-word when a single line has no whitespace to break on.
    """
    if size < 1:
        raise ValueError("chunk size must be positive")
    if len(text) <= size:
        return [text]
    chunks: List[str] = []
    remaining = text
    while len(remaining) > size:
        window = remaining[:size]
        cut = window.rfind("\n")
        if cut < size // 2:
            space = window.rfind(" ")
            cut = space if space >= size // 2 else -1
        if cut <= 0:
            cut = size
        else:
            cut += 1
        chunks.append(remaining[:cut])
        remaining = remaining[cut:]
    if remaining:
        chunks.append(remaining)
    return chunks


class OutboxTransport:
    """Keeps outbound messages in memory instead of delivering them.

    Used when no bot token is configured (local runs, tests).
    """

    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []

    async def send_text(self, chat_id: str, text: str) -> None:
        self.sent.append((str(chat_id), text))

    def messages_for(self, chat_id: str) -> List[str]:
        return [text for target, text in self.sent if target == str(chat_id)]
