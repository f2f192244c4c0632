"""Dispatch loop — the single consumer of the shared inbound queue.

Each message goes to the responder (the bot's business logic). A reply is
sent back through the channel the message came from. Being the only
consumer, the dispatcher never overlaps two sends to the same channel.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from clawbridge.channels.base import ChannelMessage, InboundQueue
from clawbridge.channels.registry import ChannelRegistry

logger = logging.getLogger(__name__)

# Callback type: async (message) -> reply text, or None for no reply
Responder = Callable[[ChannelMessage], Awaitable[str | None]]

# Enqueued after the last producer has stopped; everything before it is dispatched
_CLOSE = object()


class Dispatcher:
    """Routes inbound messages to the responder and replies to their channel.

    Example::

        dispatcher = Dispatcher(registry, responder=router)
        task = asyncio.create_task(dispatcher.run(queue))
        ...
        await Dispatcher.close(queue)
        await task  # returns once the queue is drained
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        responder: Responder,
        send_retries: int = 0,
        retry_delay: float = 1.0,
    ) -> None:
        self._registry = registry
        self._responder = responder
        self._send_retries = max(0, send_retries)
        self._retry_delay = retry_delay
        self.processed = 0
        self.delivered = 0
        self.failed = 0

    @staticmethod
    async def close(queue: InboundQueue) -> None:
        """Mark the end of input: `run` returns after draining what came before."""
        await queue.put(_CLOSE)

    async def run(self, queue: InboundQueue) -> None:
        logger.info("Dispatch loop started")
        while True:
            item = await queue.get()
            try:
                if item is _CLOSE:
                    break
                await self.dispatch(item)
            finally:
                queue.task_done()
        logger.info(
            "Dispatch loop stopped (processed=%d delivered=%d failed=%d)",
            self.processed, self.delivered, self.failed,
        )

    async def dispatch(self, message: ChannelMessage) -> bool:
        """Handle one message. Returns True if a reply was delivered."""
        self.processed += 1
        try:
            reply = await self._responder(message)
        except Exception:
            logger.exception("Responder failed for message from %s:%s",
                             message.channel_name, message.sender_id)
            return False

        if not reply:
            return False

        channel = self._registry.get(message.channel_name)
        if channel is None:
            logger.warning(
                "No channel named '%s' is registered; dropping reply to %s",
                message.channel_name, message.sender_id,
            )
            self.failed += 1
            return False

        for attempt in range(self._send_retries + 1):
            try:
                await channel.send(reply, message.sender_id)
            except Exception as e:
                logger.warning(
                    "Send via '%s' to %s failed (attempt %d/%d): %s",
                    channel.name, message.sender_id, attempt + 1, self._send_retries + 1, e,
                )
                if attempt < self._send_retries:
                    await asyncio.sleep(self._retry_delay)
                continue
            self.delivered += 1
            return True

        self.failed += 1
        return False
