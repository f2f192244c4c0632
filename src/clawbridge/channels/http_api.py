"""HTTP webhook channel — lets any service talk to the bot over plain HTTP.

Endpoints:
    POST /messages            — Submit an inbound message {"sender_id", "text"}
    GET  /outbox/<recipient>  — Collect (and clear) replies for a recipient
    GET  /health              — Health check

Requires Flask: install with `pip install clawbridge[http]`
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from collections import deque
from typing import Any

from clawbridge.channels.base import Channel, ChannelMessage, InboundQueue, TransportError
from clawbridge.config import HttpConfig

logger = logging.getLogger(__name__)

# Seconds a request waits for room in a full inbound queue before 503
_ENQUEUE_TIMEOUT = 30.0


class HttpApiChannel(Channel):
    """Flask-based webhook channel.

    Flask serves requests on its own threads; inbound messages are handed to
    the event loop with `run_coroutine_threadsafe`, so a full queue makes the
    request wait instead of dropping the message. Replies are buffered per
    recipient until collected, at most `outbox_limit` each for the
    `max_recipients` most recent recipients; overflow drops the oldest.

    Usage::

        channel = HttpApiChannel(HttpConfig(port=8080))
        await channel.listen(queue)  # serves until cancelled
    """

    def __init__(self, config: HttpConfig | None = None) -> None:
        config = config or HttpConfig()
        self._host = config.host
        self._port = config.port
        self._outbox_limit = config.outbox_limit
        self._max_recipients = config.max_recipients
        self._outbox: dict[str, deque[str]] = {}
        self._outbox_lock = threading.Lock()
        self._queue: InboundQueue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._app: Any = None

    @property
    def name(self) -> str:
        return "http"

    def _create_app(self):
        """Create the Flask application with routes."""
        try:
            from flask import Flask, jsonify, request
        except ImportError:
            raise ImportError(
                "Flask is required for the HTTP channel. "
                "Install with: pip install clawbridge[http]"
            )

        app = Flask("clawbridge-http")

        @app.route("/health", methods=["GET"])
        def health():
            return jsonify({"status": "ok", "listening": self._queue is not None})

        @app.route("/messages", methods=["POST"])
        def submit():
            data = request.get_json(silent=True)
            if data is None:
                data = {}
            if not isinstance(data, dict):
                return jsonify({"error": "body must be a JSON object"}), 400
            text = str(data.get("text", "")).strip()
            sender_id = str(data.get("sender_id") or "anonymous")

            if not text:
                return jsonify({"error": "text is required"}), 400
            if self._queue is None or self._loop is None:
                return jsonify({"error": "channel is not listening"}), 503

            message = ChannelMessage(channel_name=self.name, sender_id=sender_id, text=text)
            future = asyncio.run_coroutine_threadsafe(self._queue.put(message), self._loop)
            try:
                future.result(timeout=_ENQUEUE_TIMEOUT)
            except concurrent.futures.TimeoutError:
                future.cancel()
                return jsonify({"error": "inbound queue is full, retry later"}), 503
            return jsonify({"status": "queued"}), 202

        @app.route("/outbox/<recipient>", methods=["GET"])
        def outbox(recipient: str):
            with self._outbox_lock:
                replies = list(self._outbox.pop(recipient, ()))
            return jsonify({"recipient": recipient, "replies": replies})

        self._app = app
        return app

    @property
    def app(self):
        """Expose the Flask app for testing."""
        if self._app is None:
            self._create_app()
        return self._app

    def _attach(self, output: InboundQueue) -> None:
        """Bind the inbound queue and the running loop for request threads."""
        self._queue = output
        self._loop = asyncio.get_running_loop()

    def _detach(self) -> None:
        self._queue = None
        self._loop = None

    async def send(self, message: str, recipient: str) -> None:
        with self._outbox_lock:
            replies = self._outbox.get(recipient)
            if replies is None:
                if len(self._outbox) >= self._max_recipients:
                    # Evict the recipient that has waited longest without polling
                    stale, dropped = next(iter(self._outbox.items()))
                    del self._outbox[stale]
                    logger.warning(
                        "HTTP outbox full: dropped %d uncollected replies for '%s'",
                        len(dropped), stale,
                    )
                replies = self._outbox[recipient] = deque()
            if len(replies) >= self._outbox_limit:
                replies.popleft()
                logger.warning("HTTP outbox for '%s' full: dropped oldest reply", recipient)
            replies.append(message)

    async def listen(self, output: InboundQueue) -> None:
        """Serve HTTP on a background thread until cancelled."""
        from werkzeug.serving import make_server

        app = self.app
        try:
            server = make_server(self._host, self._port, app, threaded=True)
        except OSError as e:
            raise TransportError(f"HTTP channel cannot bind {self._host}:{self._port}: {e}") from e

        self._attach(output)
        self._thread = threading.Thread(target=server.serve_forever, daemon=True, name="http-channel")
        self._thread.start()
        logger.info("HTTP channel listening on %s:%d", self._host, self._port)
        try:
            await asyncio.Event().wait()
        finally:
            self._detach()
            await asyncio.to_thread(server.shutdown)
            server.server_close()
            self._thread = None
            logger.info("HTTP channel stopped")

    async def health_check(self) -> bool:
        return self._thread is None or self._thread.is_alive()

    def pending_replies(self, recipient: str) -> list[str]:
        """Replies waiting for a recipient, without collecting them."""
        with self._outbox_lock:
            return list(self._outbox.get(recipient, ()))
