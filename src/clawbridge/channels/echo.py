"""Echo channel — loopback adapter for smoke tests and local wiring checks.

Every `send` is fed back as a later inbound message from the recipient.
"""

from __future__ import annotations

import asyncio
import logging

from clawbridge.channels.base import Channel, ChannelMessage, InboundQueue

logger = logging.getLogger(__name__)


class EchoChannel(Channel):
    """Loopback channel: outbound text comes back in as inbound text."""

    def __init__(self, name: str = "echo") -> None:
        self._name = name
        self._loopback: asyncio.Queue[ChannelMessage] = asyncio.Queue()
        self.sent: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return self._name

    async def send(self, message: str, recipient: str) -> None:
        self.sent.append((message, recipient))
        await self.inject(message, sender_id=recipient)

    async def inject(self, text: str, sender_id: str = "echo-user") -> None:
        """Queue an inbound message as if the platform had delivered it."""
        await self._loopback.put(
            ChannelMessage(channel_name=self._name, sender_id=sender_id, text=text)
        )

    async def listen(self, output: InboundQueue) -> None:
        logger.info("Echo channel '%s' listening", self._name)
        while True:
            message = await self._loopback.get()
            await output.put(message)
