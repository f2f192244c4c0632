"""Telegram channel adapter.

Inbound updates arrive through python-telegram-bot long-polling (no webhook /
no deploy needed). Outbound replies and the health probe call the Bot API
directly so `send` never depends on the polling loop.

Requires python-telegram-bot: install with `pip install clawbridge[telegram]`

To enable:
1. Set TELEGRAM_BOT_TOKEN in .env (or add a "telegram" section to config.json)
2. Run: clawbridge start
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from clawbridge.channels.base import (
    Channel,
    ChannelMessage,
    InboundQueue,
    TransportError,
    split_message,
)
from clawbridge.config import TelegramConfig

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

# Telegram message limit is 4096 characters
_TG_MAX_LEN = 4096


def _api_ok(resp: httpx.Response) -> bool:
    """Bot API calls answer {"ok": true, ...} on success."""
    if resp.status_code != 200:
        return False
    try:
        return bool(resp.json().get("ok", False))
    except ValueError:
        return False


class TelegramChannel(Channel):
    """Telegram bot channel adapter.

    Each Telegram chat is a sender: replies go back to the chat id.
    An empty allow-list accepts everyone; otherwise the user id or
    username must be listed.
    """

    def __init__(
        self,
        config: TelegramConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._allowed = set(config.allowed_users)
        self._http = http_client

    @property
    def name(self) -> str:
        return "telegram"

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=f"{TELEGRAM_API_BASE}/bot{self._config.bot_token}",
                timeout=15.0,
            )
        return self._http

    def _is_allowed(self, user_id: str, username: str | None) -> bool:
        if not self._allowed:
            return True
        return user_id in self._allowed or (username is not None and username in self._allowed)

    def _to_message(self, update: Any) -> ChannelMessage | None:
        """Normalize a telegram.Update into a ChannelMessage (None = ignore)."""
        message = update.effective_message
        if message is None or not message.text:
            return None

        user = update.effective_user
        user_id = str(user.id) if user else ""
        username = user.username if user else None
        if not self._is_allowed(user_id, username):
            logger.warning("Telegram: ignoring message from unauthorized user %s", user_id)
            return None

        return ChannelMessage(
            channel_name=self.name,
            sender_id=str(update.effective_chat.id),
            text=message.text,
            message_id=str(message.message_id),
        )

    async def send(self, message: str, recipient: str) -> None:
        for chunk in split_message(message or "(no response)", max_len=_TG_MAX_LEN):
            try:
                resp = await self._client().post(
                    "/sendMessage", json={"chat_id": recipient, "text": chunk}
                )
            except httpx.HTTPError as e:
                raise TransportError(f"Telegram sendMessage failed: {e}") from e
            if not _api_ok(resp):
                raise TransportError(
                    f"Telegram sendMessage to {recipient} rejected: {resp.status_code} {resp.text}"
                )

    async def listen(self, output: InboundQueue) -> None:
        """Long-poll for updates until cancelled."""
        try:
            from telegram.ext import ApplicationBuilder, MessageHandler, filters
        except ImportError:
            raise ImportError(
                "python-telegram-bot is required for the Telegram channel.\n"
                "Install with: pip install clawbridge[telegram]"
            )

        async def handle_message(update: Any, context: Any) -> None:
            message = self._to_message(update)
            if message is not None:
                logger.debug("Telegram: [%s] %s", message.sender_id, message.text)
                await output.put(message)

        app = ApplicationBuilder().token(self._config.bot_token).build()
        app.add_handler(MessageHandler(filters.TEXT, handle_message))

        logger.info("Telegram bot starting (polling)...")
        async with app:
            await app.start()
            await app.updater.start_polling(
                timeout=self._config.poll_timeout, drop_pending_updates=True
            )
            try:
                await asyncio.Event().wait()
            finally:
                logger.info("Telegram channel stopping...")
                await app.updater.stop()
                await app.stop()

    async def health_check(self) -> bool:
        try:
            resp = await self._client().get("/getMe", timeout=5.0)
        except httpx.HTTPError as e:
            logger.warning("Telegram health check failed: %s", e)
            return False
        return _api_ok(resp)

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
