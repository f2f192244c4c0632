"""CLI channel — the operator's terminal as a chat channel.

Lines typed on stdin become inbound messages; replies are printed.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import sys
import threading
from typing import TextIO

from clawbridge.channels.base import Channel, ChannelMessage, InboundQueue

logger = logging.getLogger(__name__)

_QUIT_COMMANDS = ("/quit", "/exit", "/q")


class CliChannel(Channel):
    """stdin/stdout channel.

    Reading happens on a daemon thread so a blocked `readline` never holds
    up shutdown; each line is handed to the loop with backpressure.
    """

    def __init__(
        self,
        sender_id: str = "operator",
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self._sender_id = sender_id
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout
        self._write_lock = threading.Lock()

    @property
    def name(self) -> str:
        return "cli"

    async def send(self, message: str, recipient: str) -> None:
        with self._write_lock:
            print(f"\n🤖 {message}\n", file=self._stdout, flush=True)

    async def listen(self, output: InboundQueue) -> None:
        loop = asyncio.get_running_loop()
        finished: asyncio.Future[None] = loop.create_future()

        def _finish() -> None:
            if not finished.done():
                finished.set_result(None)

        def _read() -> None:
            try:
                for line in self._stdin:
                    text = line.strip()
                    if not text:
                        continue
                    if text.lower() in _QUIT_COMMANDS:
                        break
                    message = ChannelMessage(
                        channel_name=self.name, sender_id=self._sender_id, text=text
                    )
                    asyncio.run_coroutine_threadsafe(output.put(message), loop).result()
            except (RuntimeError, concurrent.futures.CancelledError):
                # Event loop closed or the put was cancelled at shutdown.
                return
            try:
                loop.call_soon_threadsafe(_finish)
            except RuntimeError:
                return

        threading.Thread(target=_read, daemon=True, name="cli-channel").start()
        logger.info("CLI channel listening on stdin")
        await finished
        logger.info("CLI channel input closed")
