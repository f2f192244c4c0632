"""Tests for the reply router."""

import asyncio

import pytest

from clawbridge.agent.router import Command, ReplyRouter, build_default_router
from clawbridge.channels.base import ChannelMessage
from clawbridge.channels.registry import ChannelRegistry


def _msg(text):
    return ChannelMessage(channel_name="cli", sender_id="op", text=text)


def _reply(router, text):
    return asyncio.run(router(_msg(text)))


@pytest.fixture
def router():
    return ReplyRouter(
        commands=[
            Command("/echo", lambda message, args: args, "Repeat the text"),
            Command("/who", lambda message, args: message.sender_id),
        ],
        default_handler=lambda message, args: f"default: {args}",
    )


class TestResolve:
    def test_command_with_args(self, router):
        command, args = router.resolve("/echo hello world")
        assert command.prefix == "/echo"
        assert args == "hello world"

    def test_case_insensitive(self, router):
        command, _ = router.resolve("/ECHO hi")
        assert command.prefix == "/echo"

    def test_plain_text_has_no_command(self, router):
        command, text = router.resolve("hello there")
        assert command is None
        assert text == "hello there"

    def test_prefix_must_be_whole_word(self, router):
        command, _ = router.resolve("/echoes hi")
        assert command is None

    def test_bot_mention_suffix(self, router):
        command, args = router.resolve("/echo@my_bot hi")
        assert command.prefix == "/echo"
        assert args == "hi"

    def test_duplicate_prefix(self, router):
        with pytest.raises(ValueError):
            router.add(Command("/Echo", lambda message, args: ""))


class TestCall:
    def test_command_handler(self, router):
        assert _reply(router, "/echo hi") == "hi"

    def test_handler_sees_message(self, router):
        assert _reply(router, "/who") == "op"

    def test_default_handler(self, router):
        assert _reply(router, "something else") == "default: something else"

    def test_no_default_means_no_reply(self):
        assert _reply(ReplyRouter(), "anything") is None

    def test_async_handler(self):
        async def handler(message, args):
            await asyncio.sleep(0)
            return f"async {args}"

        router = ReplyRouter(commands=[Command("/slow", handler)])
        assert _reply(router, "/slow job") == "async job"

    def test_help_text(self, router):
        text = router.help_text()
        assert "/echo — Repeat the text" in text
        assert "/who" in text


class TestDefaultRouter:
    def test_ping(self):
        router = build_default_router(ChannelRegistry())
        assert _reply(router, "/ping") == "pong"

    def test_channels(self, make_channel):
        router = build_default_router(ChannelRegistry([make_channel("telegram"), make_channel("qq")]))
        assert _reply(router, "/channels") == "Channels: telegram, qq"

    def test_help_lists_builtins(self):
        router = build_default_router(ChannelRegistry())
        text = _reply(router, "/help")
        for prefix in ("/ping", "/help", "/channels"):
            assert prefix in text

    def test_unknown_command_hint(self):
        router = build_default_router(ChannelRegistry())
        assert "Unknown command: /nope" in _reply(router, "/nope now")

    def test_plain_text_ignored(self):
        router = build_default_router(ChannelRegistry())
        assert _reply(router, "just chatting") is None

    def test_custom_default_handler(self):
        router = build_default_router(ChannelRegistry(), lambda message, args: "custom")
        assert _reply(router, "hello") == "custom"
        assert _reply(router, "/ping") == "pong"
