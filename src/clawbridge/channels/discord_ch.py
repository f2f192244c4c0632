"""Discord channel adapter (optional).

Requires discord.py for the gateway listener: install with
`pip install clawbridge[discord]`. Sends and health probes use the REST API.

To enable:
1. Set DISCORD_BOT_TOKEN in .env (or add a "discord" section to config.json)
2. Install the discord extra
"""

from __future__ import annotations

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
from clawbridge.config import DiscordConfig

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"

_DISCORD_MAX_LEN = 2000


class DiscordChannel(Channel):
    """Discord bot channel adapter.

    Each Discord text channel is a sender: replies go back to the channel id.
    Messages from the bot itself are never forwarded.
    """

    def __init__(
        self,
        config: DiscordConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._allowed = set(config.allowed_users)
        self._http = http_client

    @property
    def name(self) -> str:
        return "discord"

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=DISCORD_API_BASE,
                headers={"Authorization": f"Bot {self._config.bot_token}"},
                timeout=15.0,
            )
        return self._http

    def _to_message(self, message: Any, bot_user: Any) -> ChannelMessage | None:
        """Normalize a discord.Message (None = ignore)."""
        if message.author == bot_user or not message.content:
            return None

        author_id = str(message.author.id)
        if self._allowed and author_id not in self._allowed:
            logger.warning("Discord: ignoring message from unauthorized user %s", author_id)
            return None

        guild = getattr(message, "guild", None)
        if self._config.guild_id and (guild is None or str(guild.id) != self._config.guild_id):
            return None

        return ChannelMessage(
            channel_name=self.name,
            sender_id=str(message.channel.id),
            text=message.content,
            message_id=str(message.id),
        )

    async def send(self, message: str, recipient: str) -> None:
        for chunk in split_message(message or "(no response)", max_len=_DISCORD_MAX_LEN):
            try:
                resp = await self._client().post(
                    f"/channels/{recipient}/messages", json={"content": chunk}
                )
            except httpx.HTTPError as e:
                raise TransportError(f"Discord send failed: {e}") from e
            if resp.status_code == 429:
                raise TransportError(f"Discord rate limited sending to {recipient}")
            if not resp.is_success:
                raise TransportError(
                    f"Discord send to {recipient} rejected: {resp.status_code} {resp.text}"
                )

    async def listen(self, output: InboundQueue) -> None:
        """Run the gateway client until cancelled or disconnected."""
        try:
            import discord
        except ImportError:
            raise ImportError(
                "discord.py is required for the Discord channel. "
                "Install with: pip install clawbridge[discord]"
            )

        intents = discord.Intents.default()
        intents.message_content = True
        client = discord.Client(intents=intents)

        @client.event
        async def on_message(message):
            normalized = self._to_message(message, client.user)
            if normalized is not None:
                await output.put(normalized)

        logger.info("Discord bot starting...")
        try:
            await client.start(self._config.bot_token)
        except discord.LoginFailure as e:
            raise TransportError(f"Discord login failed: {e}") from e
        finally:
            if not client.is_closed():
                await client.close()
            logger.info("Discord channel stopped")

    async def health_check(self) -> bool:
        try:
            resp = await self._client().get("/users/@me", timeout=5.0)
        except httpx.HTTPError as e:
            logger.warning("Discord health check failed: %s", e)
            return False
        return resp.is_success

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
