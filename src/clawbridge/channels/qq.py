"""QQ guild bot channel adapter.

Talks to the QQ bot open platform:
- REST (httpx) for the app access token, gateway lookup, sends and health
- websocket gateway (websockets) for inbound guild and direct messages

Gateway protocol:
    op 10 HELLO      server → client, carries heartbeat_interval (ms)
    op 2  IDENTIFY   client → server, token + intents
    op 1  HEARTBEAT  client → server, last seen sequence number
    op 0  DISPATCH   server → client, event type in "t", payload in "d"
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable

import httpx
import websockets
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from clawbridge.channels.base import Channel, ChannelMessage, InboundQueue, TransportError
from clawbridge.config import QQConfig

logger = logging.getLogger(__name__)

QQ_API_BASE = "https://api.sgroup.qq.com"
QQ_SANDBOX_API_BASE = "https://sandbox.api.sgroup.qq.com"

OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_HELLO = 10

# PUBLIC_GUILD_MESSAGES | DIRECT_MESSAGE
INTENTS = (1 << 30) | (1 << 12)

DEFAULT_HEARTBEAT_INTERVAL = 40.0
DEFAULT_TOKEN_TTL = 7200
TOKEN_EXPIRY_BUFFER = 60

_MESSAGE_EVENTS = ("AT_MESSAGE_CREATE", "MESSAGE_CREATE")


def _json_object(resp: httpx.Response, what: str) -> dict[str, Any]:
    """Decode a QQ API response body that must be a JSON object."""
    try:
        data = resp.json()
    except ValueError as e:
        raise TransportError(f"{what}: response is not JSON") from e
    if not isinstance(data, dict):
        raise TransportError(f"{what}: expected a JSON object, got {type(data).__name__}")
    return data


class QQChannel(Channel):
    """QQ bot channel adapter.

    The access token is shared by `send`, `listen` and `health_check`, so
    refreshes are serialized behind an asyncio.Lock and double-checked.
    Replies go to the QQ channel id the message came from.
    """

    def __init__(
        self,
        config: QQConfig,
        http_client: httpx.AsyncClient | None = None,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        self._config = config
        self._api_base = QQ_SANDBOX_API_BASE if config.sandbox else QQ_API_BASE
        self._http = http_client
        self._connect = connect or websockets.connect
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()
        self._last_seq: int | None = None
        self._heartbeat_interval = DEFAULT_HEARTBEAT_INTERVAL

    @property
    def name(self) -> str:
        return "qq"

    @property
    def api_base(self) -> str:
        return self._api_base

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self._api_base, timeout=15.0)
        return self._http

    # ── Auth ──

    def _cached_token(self, now: float) -> str | None:
        if self._token and now < self._token_expires_at:
            return self._token
        return None

    async def _access_token(self) -> str:
        """Return a valid app access token, fetching a new one when expired."""
        token = self._cached_token(time.time())
        if token:
            return token

        async with self._token_lock:
            now = time.time()
            # Another task may have refreshed while we waited
            token = self._cached_token(now)
            if token:
                return token

            logger.info("Refetching QQ access token...")
            try:
                resp = await self._client().post(
                    "/app/getAppAccessToken",
                    json={"appId": self._config.app_id, "clientSecret": self._config.app_secret},
                )
            except httpx.HTTPError as e:
                raise TransportError(f"Failed to fetch QQ access token: {e}") from e
            if not resp.is_success:
                raise TransportError(f"Failed to fetch QQ access token: {resp.text}")

            data = _json_object(resp, "QQ access token")
            token = data.get("access_token")
            if not token:
                raise TransportError("QQ token response has no access_token")
            try:
                expires_in = int(data.get("expires_in", DEFAULT_TOKEN_TTL))
            except (TypeError, ValueError):
                expires_in = DEFAULT_TOKEN_TTL

            self._token = token
            self._token_expires_at = now + expires_in - TOKEN_EXPIRY_BUFFER
            return token

    async def _auth_headers(self) -> dict[str, str]:
        token = await self._access_token()
        return {"Authorization": f"QQBot {token}"}

    # ── Outbound ──

    async def send(self, message: str, recipient: str) -> None:
        headers = await self._auth_headers()
        try:
            resp = await self._client().post(
                f"/channels/{recipient}/messages",
                json={"content": message},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to send QQ message: {e}") from e
        if not resp.is_success:
            raise TransportError(
                f"Failed to send QQ message to {recipient}: {resp.status_code} {resp.text}"
            )

    # ── Inbound ──

    async def _gateway_url(self) -> str:
        headers = await self._auth_headers()
        try:
            resp = await self._client().get("/gateway", headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to get QQ gateway URL: {e}") from e
        if not resp.is_success:
            raise TransportError(f"Failed to get QQ gateway URL: {resp.status_code}")

        url = _json_object(resp, "QQ gateway URL").get("url")
        if not isinstance(url, str) or not url:
            raise TransportError("No 'url' in QQ gateway response")
        return url

    def _identify_payload(self, token: str) -> dict[str, Any]:
        return {
            "op": OP_IDENTIFY,
            "d": {
                "token": f"QQBot {token}",
                "intents": INTENTS,
                "shard": [0, 1],
                "properties": {"$os": "linux", "$browser": "clawbridge", "$device": "clawbridge"},
            },
        }

    def _handle_frame(self, frame: dict[str, Any]) -> ChannelMessage | None:
        """Apply one gateway frame to session state; return a message if it carries one."""
        op = frame.get("op")

        if op == OP_HELLO:
            interval_ms = (frame.get("d") or {}).get("heartbeat_interval")
            if isinstance(interval_ms, (int, float)) and interval_ms > 0:
                self._heartbeat_interval = interval_ms / 1000
            return None

        if op != OP_DISPATCH:
            return None

        seq = frame.get("s")
        if isinstance(seq, int):
            self._last_seq = seq

        if frame.get("t") not in _MESSAGE_EVENTS:
            return None

        d = frame.get("d") or {}
        return ChannelMessage(
            channel_name=self.name,
            sender_id=str(d.get("channel_id") or "unknown"),
            text=str(d.get("content") or ""),
            message_id=str(d.get("id") or "unknown"),
        )

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await ws.send(json.dumps({"op": OP_HEARTBEAT, "d": self._last_seq}))
            except WebSocketException as e:
                logger.error("Failed to send QQ heartbeat: %s", e)
                await ws.close()
                return

    async def listen(self, output: InboundQueue) -> None:
        gateway_url = await self._gateway_url()
        logger.info("Connecting to QQ Gateway: %s", gateway_url)

        self._last_seq = None
        self._heartbeat_interval = DEFAULT_HEARTBEAT_INTERVAL
        try:
            async with self._connect(gateway_url) as ws:
                token = await self._access_token()
                await ws.send(json.dumps(self._identify_payload(token)))

                heartbeat = asyncio.create_task(self._heartbeat(ws), name="qq-heartbeat")
                try:
                    async for raw in ws:
                        try:
                            frame = json.loads(raw)
                        except json.JSONDecodeError:
                            logger.warning("QQ gateway sent a non-JSON frame, skipping")
                            continue
                        if not isinstance(frame, dict):
                            logger.warning("QQ gateway sent a non-object frame, skipping")
                            continue
                        message = self._handle_frame(frame)
                        if message is not None:
                            await output.put(message)
                finally:
                    heartbeat.cancel()
        except ConnectionClosedOK:
            pass
        except (WebSocketException, OSError) as e:
            raise TransportError(f"QQ gateway connection failed: {e}") from e

        logger.info("QQ gateway closed")

    # ── Health ──

    async def health_check(self) -> bool:
        try:
            headers = await self._auth_headers()
            resp = await self._client().get("/users/@me", headers=headers, timeout=5.0)
        except (TransportError, httpx.HTTPError) as e:
            logger.warning("QQ health check failed: %s", e)
            return False
        return resp.is_success

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
