"""Tests for the Telegram channel (no network: httpx MockTransport)."""

import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from clawbridge.channels.base import TransportError, split_message
from clawbridge.channels.telegram import TelegramChannel
from clawbridge.config import TelegramConfig


def _update(text="hi", user_id=42, username="alice", chat_id=1001, message_id=7):
    return SimpleNamespace(
        effective_message=SimpleNamespace(text=text, message_id=message_id),
        effective_user=SimpleNamespace(id=user_id, username=username),
        effective_chat=SimpleNamespace(id=chat_id),
    )


def _channel(handler, **config):
    config.setdefault("bot_token", "T")
    client = httpx.AsyncClient(
        base_url="https://api.telegram.org/botT", transport=httpx.MockTransport(handler)
    )
    return TelegramChannel(TelegramConfig(**config), http_client=client)


class TestSplitMessage:
    def test_short_message_unchanged(self):
        assert split_message("hello", 4096) == ["hello"]

    def test_splits_on_newline(self):
        text = "a" * 3000 + "\n" + "b" * 3000
        chunks = split_message(text, 4096)
        assert chunks == ["a" * 3000, "b" * 3000]

    def test_hard_split_without_newline(self):
        chunks = split_message("x" * 5000, 4096)
        assert [len(c) for c in chunks] == [4096, 904]


class TestToMessage:
    def test_normalizes_update(self):
        channel = TelegramChannel(TelegramConfig(bot_token="T"))
        message = channel._to_message(_update())
        assert message.channel_name == "telegram"
        assert message.sender_id == "1001"
        assert message.text == "hi"
        assert message.message_id == "7"

    def test_ignores_non_text(self):
        channel = TelegramChannel(TelegramConfig(bot_token="T"))
        assert channel._to_message(_update(text=None)) is None

    def test_allow_list_by_id(self):
        channel = TelegramChannel(TelegramConfig(bot_token="T", allowed_users=["42"]))
        assert channel._to_message(_update(user_id=42)) is not None
        assert channel._to_message(_update(user_id=99, username="mallory")) is None

    def test_allow_list_by_username(self):
        channel = TelegramChannel(TelegramConfig(bot_token="T", allowed_users=["alice"]))
        assert channel._to_message(_update(user_id=99, username="alice")) is not None


class TestSend:
    def test_posts_send_message(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"ok": True, "result": {}})

        asyncio.run(_channel(handler).send("hello", "1001"))

        assert len(requests) == 1
        assert requests[0].url.path == "/botT/sendMessage"
        assert json.loads(requests[0].content) == {"chat_id": "1001", "text": "hello"}

    def test_long_message_is_chunked(self):
        texts = []

        def handler(request):
            texts.append(json.loads(request.content)["text"])
            return httpx.Response(200, json={"ok": True})

        asyncio.run(_channel(handler).send("x" * 5000, "1001"))
        assert [len(t) for t in texts] == [4096, 904]

    def test_rejected_raises_transport_error(self):
        def handler(request):
            return httpx.Response(400, json={"ok": False, "description": "chat not found"})

        with pytest.raises(TransportError, match="rejected"):
            asyncio.run(_channel(handler).send("hello", "nope"))

    def test_network_error_raises_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable")

        with pytest.raises(TransportError):
            asyncio.run(_channel(handler).send("hello", "1001"))


class TestHealthCheck:
    def test_get_me_ok(self):
        def handler(request):
            assert request.method == "GET"
            assert request.url.path == "/botT/getMe"
            return httpx.Response(200, json={"ok": True, "result": {"id": 1}})

        assert asyncio.run(_channel(handler).health_check()) is True

    def test_bad_token(self):
        def handler(request):
            return httpx.Response(401, json={"ok": False})

        assert asyncio.run(_channel(handler).health_check()) is False

    def test_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>gateway</html>")

        assert asyncio.run(_channel(handler).health_check()) is False

    def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out")

        assert asyncio.run(_channel(handler).health_check()) is False


class TestClose:
    def test_close_releases_client(self):
        channel = _channel(lambda request: httpx.Response(200, json={"ok": True}))
        asyncio.run(channel.close())
        assert channel._http is None
        asyncio.run(channel.close())  # Second close is a no-op
