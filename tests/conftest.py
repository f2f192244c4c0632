"""Shared fixtures: a scriptable in-memory channel."""

import asyncio

import pytest

from clawbridge.channels.base import Channel, ChannelMessage, TransportError


class FakeChannel(Channel):
    """Channel whose inbound messages, failures and latency are scripted.

    `listen` emits `inbound` in order from sender "user", then keeps
    listening until cancelled (or raises `listen_error` straight away).
    """

    def __init__(
        self,
        name,
        inbound=(),
        listen_error=None,
        health=True,
        health_delay=0.0,
        send_failures=0,
    ):
        self._name = name
        self.inbound = list(inbound)
        self.listen_error = listen_error
        self.health = health
        self.health_delay = health_delay
        self.send_failures = send_failures
        self.sent = []
        self.listen_calls = 0
        self.closed = False

    @property
    def name(self):
        return self._name

    async def send(self, message, recipient):
        if self.send_failures > 0:
            self.send_failures -= 1
            raise TransportError("send failed")
        self.sent.append((message, recipient))

    async def listen(self, output):
        self.listen_calls += 1
        if self.listen_error is not None:
            raise self.listen_error
        for text in self.inbound:
            await output.put(ChannelMessage(channel_name=self._name, sender_id="user", text=text))
        await asyncio.Event().wait()

    async def health_check(self):
        if self.health_delay:
            await asyncio.sleep(self.health_delay)
        if isinstance(self.health, Exception):
            raise self.health
        return self.health

    async def close(self):
        self.closed = True


@pytest.fixture
def make_channel():
    return FakeChannel
