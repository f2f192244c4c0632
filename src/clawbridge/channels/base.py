"""Abstract base class for channel adapters.

Each channel normalizes incoming platform events into `ChannelMessage`
values pushed onto the shared inbound queue, and delivers outbound text
with `send`. Channels run as asyncio tasks on the bot's event loop.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

InboundQueue = asyncio.Queue  # asyncio.Queue[ChannelMessage]


class TransportError(Exception):
    """A network or protocol failure talking to a messaging platform."""


def split_message(text: str, max_len: int) -> list[str]:
    """Split long text into chunks that fit a platform message limit."""
    if len(text) <= max_len:
        return [text]
    chunks: list[str] = []
    while text:
        if len(text) <= max_len:
            chunks.append(text)
            break
        # Prefer the last newline before the limit
        split_at = text.rfind("\n", 0, max_len)
        if split_at <= 0:
            split_at = max_len
        chunks.append(text[:split_at])
        text = text[split_at:].lstrip("\n")
    return chunks


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChannelMessage:
    """A normalized inbound message.

    Attributes:
        channel_name: Name of the channel that produced it (routing key for replies).
        sender_id: Platform-specific identifier replies are sent to.
        text: Raw message content.
        received_at: When the channel observed the message (UTC).
        message_id: Platform message id, if the platform has one.
    """

    channel_name: str
    sender_id: str
    text: str
    received_at: datetime = field(default_factory=_utcnow)
    message_id: str | None = None


class Channel(ABC):
    """Base interface for all channel adapters (Telegram, Discord, QQ, HTTP, CLI)."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Channel identifier (e.g. 'telegram', 'qq', 'http'). Never changes."""
        ...

    @abstractmethod
    async def send(self, message: str, recipient: str) -> None:
        """Deliver text to a platform recipient. Raises TransportError on failure."""
        ...

    @abstractmethod
    async def listen(self, output: InboundQueue) -> None:
        """Push a ChannelMessage onto `output` for every inbound event.

        Runs until the transport closes, fails, or the task is cancelled.
        Uses `await output.put(...)` so a full queue applies backpressure.
        """
        ...

    async def health_check(self) -> bool:
        """Lightweight reachability probe. Must not mutate remote state."""
        return True

    async def close(self) -> None:
        """Release transport resources. Called once at shutdown."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name}>"
