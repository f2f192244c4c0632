"""Channel registry — builds channels from config and supervises their listeners.

A single declarative table maps each config section key to its typed config
record and channel constructor. Building, status listing and health checks all
iterate that table, so adding a platform means adding one row.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator

from clawbridge.channels.base import Channel, InboundQueue
from clawbridge.channels.discord_ch import DiscordChannel
from clawbridge.channels.echo import EchoChannel
from clawbridge.channels.http_api import HttpApiChannel
from clawbridge.channels.qq import QQChannel
from clawbridge.channels.repl import CliChannel
from clawbridge.channels.telegram import TelegramChannel
from clawbridge.config import (
    AppConfig,
    CliConfig,
    ConfigError,
    DiscordConfig,
    DispatchSettings,
    EchoConfig,
    HttpConfig,
    QQConfig,
    TelegramConfig,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelSpec:
    """One row of the channel table.

    Attributes:
        key: Config section key, also the display name in status listings.
        config_type: Typed record with a `from_dict` that raises ConfigError.
        factory: Builds the channel from the parsed record.
    """

    key: str
    config_type: Any
    factory: Callable[[Any], Channel]

    def build(self, section: dict[str, Any]) -> Channel:
        return self.factory(self.config_type.from_dict(section))


CHANNEL_TABLE: list[ChannelSpec] = [
    ChannelSpec("telegram", TelegramConfig, TelegramChannel),
    ChannelSpec("discord", DiscordConfig, DiscordChannel),
    ChannelSpec("qq", QQConfig, QQChannel),
    ChannelSpec("http", HttpConfig, HttpApiChannel),
    ChannelSpec("cli", CliConfig, lambda c: CliChannel(sender_id=c.sender_id)),
    ChannelSpec("echo", EchoConfig, lambda c: EchoChannel(name=c.name)),
]

CHANNEL_KEYS = [entry.key for entry in CHANNEL_TABLE]


def build_from_config(
    config: AppConfig,
    strict: bool = True,
    errors: dict[str, str] | None = None,
) -> list[Channel]:
    """Construct one channel per present config section, in table order.

    Absent sections are skipped. A present but malformed section raises
    ConfigError when `strict`; otherwise it is logged, recorded in `errors`
    and only that channel is left out.
    """
    channels: list[Channel] = []
    names: set[str] = set()

    for entry in CHANNEL_TABLE:
        section = config.channels.get(entry.key)
        if section is None:
            continue
        try:
            channel = entry.build(section)
            if channel.name in names:
                raise ConfigError(f"channels.{entry.key}: duplicate channel name '{channel.name}'")
        except ConfigError as e:
            if strict:
                raise
            logger.warning("Skipping channel '%s': %s", entry.key, e)
            if errors is not None:
                errors[entry.key] = str(e)
            continue

        names.add(channel.name)
        channels.append(channel)
        logger.debug("Built channel '%s'", channel.name)

    return channels


def list_status(config: AppConfig) -> list[tuple[str, bool]]:
    """(name, enabled) for every known channel, in table order. No I/O."""
    return [(entry.key, entry.key in config.channels) for entry in CHANNEL_TABLE]


@dataclass(frozen=True)
class ListenerPolicy:
    """What to do when a listener exits with an error. Default: leave it down."""

    restart: bool = False
    restart_delay: float = 5.0
    max_restarts: int = 3

    @classmethod
    def from_settings(cls, settings: DispatchSettings) -> ListenerPolicy:
        return cls(
            restart=settings.restart_listeners,
            restart_delay=settings.restart_delay,
            max_restarts=settings.max_restarts,
        )


async def _run_listener(channel: Channel, output: InboundQueue, policy: ListenerPolicy) -> None:
    """Run one channel's listen loop; failures stay inside this task."""
    restarts = 0
    while True:
        try:
            await channel.listen(output)
        except Exception as e:
            logger.warning("Channel '%s' listener failed: %s", channel.name, e)
            if not policy.restart or restarts >= policy.max_restarts:
                return
            restarts += 1
            logger.info(
                "Restarting '%s' listener in %.1fs (attempt %d/%d)",
                channel.name, policy.restart_delay, restarts, policy.max_restarts,
            )
            await asyncio.sleep(policy.restart_delay)
        else:
            logger.warning("Channel '%s' stopped listening", channel.name)
            return


async def start_all(
    channels: Iterable[Channel],
    output: InboundQueue,
    policy: ListenerPolicy | None = None,
) -> dict[str, asyncio.Task]:
    """Spawn a listener task per channel and return without waiting on them."""
    policy = policy or ListenerPolicy()
    tasks: dict[str, asyncio.Task] = {}

    for channel in channels:
        try:
            tasks[channel.name] = asyncio.create_task(
                _run_listener(channel, output, policy), name=f"listen:{channel.name}"
            )
        except Exception as e:
            logger.warning("Failed to start channel '%s': %s", channel.name, e)
            continue
        logger.info("Started channel: %s", channel.name)

    # Let every listener reach its first suspension point
    await asyncio.sleep(0)
    return tasks


async def health_check_all(channels: Iterable[Channel], timeout: float = 10.0) -> dict[str, bool]:
    """Probe every channel concurrently; timeouts and errors count as unhealthy."""
    channels = list(channels)

    async def _probe(channel: Channel) -> bool:
        try:
            return bool(await asyncio.wait_for(channel.health_check(), timeout))
        except asyncio.TimeoutError:
            logger.warning("Health check for '%s' timed out after %.1fs", channel.name, timeout)
        except Exception as e:
            logger.warning("Health check for '%s' failed: %s", channel.name, e)
        return False

    results = await asyncio.gather(*(_probe(c) for c in channels))
    return {channel.name: ok for channel, ok in zip(channels, results)}


class ChannelRegistry:
    """Ordered, name-unique set of live channels plus their listener tasks.

    Built once at startup and passed explicitly to whatever needs it::

        registry = ChannelRegistry.from_config(config, strict=False)
        await registry.start(queue)
        ...
        await registry.stop_listeners(grace=5)
        await registry.close_all()
    """

    def __init__(self, channels: Iterable[Channel] = ()) -> None:
        self._channels: dict[str, Channel] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        for channel in channels:
            self.register(channel)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        strict: bool = True,
        errors: dict[str, str] | None = None,
    ) -> ChannelRegistry:
        return cls(build_from_config(config, strict=strict, errors=errors))

    def register(self, channel: Channel) -> None:
        """Add a channel. Raises ValueError if the name is already taken."""
        if channel.name in self._channels:
            raise ValueError(f"Channel already registered: {channel.name}")
        self._channels[channel.name] = channel
        logger.info("Registered channel: %s", channel.name)

    def get(self, name: str) -> Channel | None:
        """Get a channel by name, or None."""
        return self._channels.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._channels.keys())

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels.values())

    @property
    def listening(self) -> list[str]:
        """Names of channels whose listener task is still running."""
        return [name for name, task in self._tasks.items() if not task.done()]

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, name: object) -> bool:
        return name in self._channels

    def __iter__(self) -> Iterator[Channel]:
        return iter(self.channels)

    # ── Lifecycle ──

    async def start(self, output: InboundQueue, policy: ListenerPolicy | None = None) -> None:
        self._tasks = await start_all(self.channels, output, policy)

    async def health(self, timeout: float = 10.0) -> dict[str, bool]:
        return await health_check_all(self.channels, timeout)

    async def stop_listeners(self, grace: float = 5.0) -> list[str]:
        """Cancel every listener and wait up to `grace` seconds.

        Returns the names of listeners that did not stop in time; they are
        abandoned.
        """
        running = {name: task for name, task in self._tasks.items() if not task.done()}
        for task in running.values():
            task.cancel()

        abandoned: list[str] = []
        if running:
            _, pending = await asyncio.wait(running.values(), timeout=grace)
            abandoned = [name for name, task in running.items() if task in pending]
            for name in abandoned:
                logger.warning("Channel '%s' did not stop within %.1fs; abandoning it", name, grace)

        self._tasks = {}
        return abandoned

    async def close_all(self) -> None:
        """Release every channel's transport, best effort."""
        for channel in self._channels.values():
            try:
                await channel.close()
            except Exception as e:
                logger.warning("Error closing channel '%s': %s", channel.name, e)
