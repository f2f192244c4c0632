"""Tests for the channel registry: building, status, health and listeners."""

import asyncio
import time

import pytest

from clawbridge.channels.base import Channel, TransportError
from clawbridge.channels.registry import (
    CHANNEL_KEYS,
    ChannelRegistry,
    ListenerPolicy,
    build_from_config,
    health_check_all,
    list_status,
    start_all,
)
from clawbridge.config import AppConfig, ConfigError, DispatchSettings

ALL_SECTIONS = {
    "telegram": {"bot_token": "123:abc"},
    "discord": {"bot_token": "d-token"},
    "qq": {"app_id": "app", "app_secret": "secret"},
    "http": {"port": 0},
    "cli": {},
    "echo": {},
}


class TestBuildFromConfig:
    def test_no_sections_no_channels(self):
        assert build_from_config(AppConfig()) == []

    def test_every_enabled_section_builds_one_channel(self):
        config = AppConfig.from_dict({"channels": ALL_SECTIONS})
        channels = build_from_config(config)
        names = [c.name for c in channels]
        assert names == CHANNEL_KEYS
        assert len(set(names)) == len(names)

    @pytest.mark.parametrize("enabled", [["echo"], ["telegram", "cli"], ["qq", "http", "discord"]])
    def test_k_enabled_sections_give_k_channels(self, enabled):
        config = AppConfig.from_dict({"channels": {k: ALL_SECTIONS[k] for k in enabled}})
        channels = build_from_config(config)
        assert sorted(c.name for c in channels) == sorted(enabled)

    def test_only_telegram_enabled(self):
        config = AppConfig.from_dict({"channels": {"telegram": {"bot_token": "t"}}})
        channels = build_from_config(config)
        assert [c.name for c in channels] == ["telegram"]

    def test_invalid_section_strict_raises(self):
        config = AppConfig.from_dict({"channels": {"telegram": {}, "echo": {}}})
        with pytest.raises(ConfigError):
            build_from_config(config)

    def test_invalid_section_lenient_skips_only_that_channel(self):
        config = AppConfig.from_dict({"channels": {"telegram": {}, "echo": {}}})
        errors = {}
        channels = build_from_config(config, strict=False, errors=errors)
        assert [c.name for c in channels] == ["echo"]
        assert "telegram" in errors
        assert "bot_token" in errors["telegram"]

    def test_duplicate_names_rejected(self):
        config = AppConfig.from_dict({"channels": {
            "telegram": {"bot_token": "t"},
            "echo": {"name": "telegram"},
        }})
        with pytest.raises(ConfigError, match="duplicate"):
            build_from_config(config)
        channels = build_from_config(config, strict=False)
        assert [c.name for c in channels] == ["telegram"]

    def test_unknown_sections_ignored(self):
        config = AppConfig.from_dict({"channels": {"matrix": {}, "echo": {}}})
        assert [c.name for c in build_from_config(config)] == ["echo"]


class TestListStatus:
    def test_telegram_enabled_discord_disabled(self):
        config = AppConfig.from_dict({"channels": {"telegram": {"bot_token": "t"}}})
        status = list_status(config)
        assert status[:2] == [("telegram", True), ("discord", False)]
        assert [name for name, _ in status] == CHANNEL_KEYS
        assert sum(enabled for _, enabled in status) == 1

    def test_invalid_section_still_counts_as_enabled(self):
        config = AppConfig.from_dict({"channels": {"qq": {}}})
        assert dict(list_status(config))["qq"] is True


class TestChannelRegistry:
    def test_register_and_get(self, make_channel):
        registry = ChannelRegistry([make_channel("a"), make_channel("b")])
        assert registry.names == ["a", "b"]
        assert registry.get("a").name == "a"
        assert registry.get("missing") is None
        assert "b" in registry
        assert len(registry) == 2

    def test_duplicate_name_raises(self, make_channel):
        registry = ChannelRegistry([make_channel("a")])
        with pytest.raises(ValueError):
            registry.register(make_channel("a"))

    def test_from_config(self):
        config = AppConfig.from_dict({"channels": {"echo": {}, "cli": {}}})
        registry = ChannelRegistry.from_config(config)
        assert registry.names == ["cli", "echo"]


class TestHealthCheckAll:
    def test_all_healthy(self, make_channel):
        channels = [make_channel("a"), make_channel("b")]
        assert asyncio.run(health_check_all(channels, timeout=1)) == {"a": True, "b": True}

    def test_base_default_is_healthy(self):
        class Minimal(Channel):
            name = "minimal"

            async def send(self, message, recipient):
                pass

            async def listen(self, output):
                pass

        assert asyncio.run(health_check_all([Minimal()], timeout=1)) == {"minimal": True}

    def test_slow_channel_does_not_block_others(self, make_channel):
        channels = [
            make_channel("fast"),
            make_channel("hanging", health_delay=30),
            make_channel("also-fast"),
        ]
        start = time.monotonic()
        results = asyncio.run(health_check_all(channels, timeout=0.2))
        elapsed = time.monotonic() - start

        assert results == {"fast": True, "hanging": False, "also-fast": True}
        assert elapsed < 2

    def test_error_counts_as_unhealthy(self, make_channel):
        channels = [make_channel("broken", health=TransportError("down")), make_channel("ok")]
        assert asyncio.run(health_check_all(channels, timeout=1)) == {"broken": False, "ok": True}

    def test_false_result(self, make_channel):
        assert asyncio.run(health_check_all([make_channel("x", health=False)])) == {"x": False}


class TestStartAll:
    def test_spawns_every_listener_without_blocking(self, make_channel):
        async def scenario():
            queue = asyncio.Queue()
            channels = [make_channel("a", inbound=["1"]), make_channel("b", inbound=["2"])]
            tasks = await asyncio.wait_for(start_all(channels, queue), timeout=1)
            assert set(tasks) == {"a", "b"}
            assert not any(t.done() for t in tasks.values())
            for t in tasks.values():
                t.cancel()
            return sorted(queue.get_nowait().text for _ in range(queue.qsize()))

        assert asyncio.run(scenario()) == ["1", "2"]

    def test_failing_listener_is_isolated(self, make_channel):
        async def scenario():
            queue = asyncio.Queue()
            broken = make_channel("broken", listen_error=TransportError("connect refused"))
            healthy = make_channel("healthy", inbound=["hello", "world"])
            registry = ChannelRegistry([broken, healthy])
            await registry.start(queue)
            await asyncio.sleep(0.01)
            listening = registry.listening
            received = [queue.get_nowait() for _ in range(queue.qsize())]
            await registry.stop_listeners(grace=1)
            return listening, received

        listening, received = asyncio.run(scenario())
        assert listening == ["healthy"]
        assert [m.text for m in received] == ["hello", "world"]
        assert all(m.channel_name == "healthy" for m in received)

    def test_per_channel_order_preserved(self, make_channel):
        async def scenario():
            queue = asyncio.Queue(maxsize=3)
            a = make_channel("a", inbound=[f"a{i}" for i in range(30)])
            b = make_channel("b", inbound=[f"b{i}" for i in range(30)])
            tasks = await start_all([a, b], queue)
            drained = []
            while len(drained) < 60:
                drained.append(await asyncio.wait_for(queue.get(), timeout=1))
            for t in tasks.values():
                t.cancel()
            return drained

        drained = asyncio.run(scenario())
        assert [m.text for m in drained if m.channel_name == "a"] == [f"a{i}" for i in range(30)]
        assert [m.text for m in drained if m.channel_name == "b"] == [f"b{i}" for i in range(30)]

    def test_no_restart_by_default(self, make_channel):
        async def scenario():
            channel = make_channel("flaky", listen_error=TransportError("boom"))
            tasks = await start_all([channel], asyncio.Queue())
            await asyncio.wait_for(tasks["flaky"], timeout=1)
            return channel.listen_calls

        assert asyncio.run(scenario()) == 1

    def test_restart_policy(self, make_channel):
        async def scenario():
            channel = make_channel("flaky", listen_error=TransportError("boom"))
            policy = ListenerPolicy(restart=True, restart_delay=0, max_restarts=2)
            tasks = await start_all([channel], asyncio.Queue(), policy)
            await asyncio.wait_for(tasks["flaky"], timeout=1)
            return channel.listen_calls

        assert asyncio.run(scenario()) == 3

    def test_policy_from_settings(self):
        policy = ListenerPolicy.from_settings(
            DispatchSettings(restart_listeners=True, restart_delay=0.5, max_restarts=7)
        )
        assert policy == ListenerPolicy(restart=True, restart_delay=0.5, max_restarts=7)


class TestStopAndClose:
    def test_stop_listeners_cancels_all(self, make_channel):
        async def scenario():
            registry = ChannelRegistry([make_channel("a"), make_channel("b")])
            await registry.start(asyncio.Queue())
            abandoned = await registry.stop_listeners(grace=1)
            return abandoned, registry.listening

        abandoned, listening = asyncio.run(scenario())
        assert abandoned == []
        assert listening == []

    def test_stubborn_listener_is_abandoned(self, make_channel):
        class Stubborn(Channel):
            name = "stubborn"

            async def send(self, message, recipient):
                pass

            async def listen(self, output):
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    await asyncio.sleep(0.5)

        async def scenario():
            registry = ChannelRegistry([Stubborn(), make_channel("polite")])
            await registry.start(asyncio.Queue())
            start = time.monotonic()
            abandoned = await registry.stop_listeners(grace=0.1)
            return abandoned, time.monotonic() - start

        abandoned, elapsed = asyncio.run(scenario())
        assert abandoned == ["stubborn"]
        assert elapsed < 0.4

    def test_close_all_is_best_effort(self, make_channel):
        class BadClose(Channel):
            name = "bad"

            async def send(self, message, recipient):
                pass

            async def listen(self, output):
                pass

            async def close(self):
                raise RuntimeError("already closed")

        good = make_channel("good")
        registry = ChannelRegistry([BadClose(), good])
        asyncio.run(registry.close_all())
        assert good.closed
