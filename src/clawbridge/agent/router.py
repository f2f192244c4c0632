"""Reply router — prefix-based routing of inbound messages to reply handlers.

The dispatcher calls the router as its responder. Messages starting with a
registered command prefix (e.g. `/ping`) go to that command's handler with
the prefix stripped; everything else goes to the default handler, if any.
Handlers may be plain functions or coroutines.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Callable

from clawbridge.channels.base import ChannelMessage
from clawbridge.channels.registry import ChannelRegistry

# Handler type: (message, argument text) -> reply or None (may be async)
ReplyHandler = Callable[[ChannelMessage, str], Any]


@dataclass
class Command:
    """A prefix command.

    Attributes:
        prefix: Command word including the slash (e.g. "/ping").
        handler: Called with the message and the text after the prefix.
        description: One line shown by /help.
    """

    prefix: str
    handler: ReplyHandler
    description: str = ""


class ReplyRouter:
    """Routes messages to commands by prefix, falling back to a default handler.

    Usage::

        router = ReplyRouter(default_handler=my_business_logic)
        router.add(Command("/ping", lambda msg, args: "pong", "Liveness check"))

        reply = await router(message)
    """

    def __init__(
        self,
        commands: list[Command] | None = None,
        default_handler: ReplyHandler | None = None,
    ) -> None:
        self._commands: dict[str, Command] = {}
        self._default = default_handler
        for command in commands or []:
            self.add(command)

    def add(self, command: Command) -> None:
        """Register a command. Raises ValueError if the prefix is taken."""
        prefix = command.prefix.lower()
        if prefix in self._commands:
            raise ValueError(f"Command already registered: {command.prefix}")
        self._commands[prefix] = command

    def resolve(self, text: str) -> tuple[Command | None, str]:
        """Find the command for a message.

        Returns:
            (command or None, text with the prefix stripped)
        """
        stripped = text.strip()
        if not stripped.startswith("/"):
            return None, text

        word, _, rest = stripped.partition(" ")
        # Group chats address commands as /ping@botname
        word = word.split("@", 1)[0]
        command = self._commands.get(word.lower())
        if command is None:
            return None, text
        return command, rest.strip()

    async def __call__(self, message: ChannelMessage) -> str | None:
        command, args = self.resolve(message.text)
        handler = command.handler if command else self._default
        if handler is None:
            return None

        result = handler(message, args)
        if inspect.isawaitable(result):
            result = await result
        return result

    @property
    def prefixes(self) -> list[str]:
        return list(self._commands.keys())

    def help_text(self) -> str:
        lines = ["Commands:"]
        for command in self._commands.values():
            if command.description:
                lines.append(f"  {command.prefix} — {command.description}")
            else:
                lines.append(f"  {command.prefix}")
        return "\n".join(lines)


def build_default_router(
    registry: ChannelRegistry,
    default_handler: ReplyHandler | None = None,
) -> ReplyRouter:
    """Router with the built-in /ping, /help and /channels commands.

    Without a default handler, unknown slash commands get a hint and plain
    text gets no reply.
    """
    def _unknown(message: ChannelMessage, args: str) -> str | None:
        word = message.text.strip().split(" ", 1)[0]
        if word.startswith("/"):
            return f"Unknown command: {word}. Try /help."
        return None

    router = ReplyRouter(default_handler=default_handler or _unknown)

    router.add(Command("/ping", lambda message, args: "pong", "Check the bot is alive"))
    router.add(Command("/help", lambda message, args: router.help_text(), "List commands"))
    router.add(Command(
        "/channels",
        lambda message, args: "Channels: " + ", ".join(registry.names),
        "List connected channels",
    ))
    return router
