"""Entry point for clawbridge.

Commands:
  1. `clawbridge channels` — list known channels and whether they are enabled
  2. `clawbridge doctor`   — probe every enabled channel once
  3. `clawbridge start`    — run all enabled channels until Ctrl+C / SIGTERM

Without --config, the config is auto-discovered (CLAWBRIDGE_CONFIG env, then
~/.clawbridge/config.json), with channel credentials also read from .env.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from clawbridge.agent.router import build_default_router
from clawbridge.channels.base import Channel
from clawbridge.channels.registry import (
    ChannelRegistry,
    build_from_config,
    health_check_all,
    list_status,
)
from clawbridge.config import LOG_LEVEL, AppConfig, ConfigError
from clawbridge.supervisor import Supervisor

logger = logging.getLogger(__name__)


def _load_config(path: str | None) -> AppConfig:
    try:
        if path:
            return AppConfig.from_file(path)
        # Auto-discover ~/.clawbridge/config.json (or CLAWBRIDGE_CONFIG env)
        return AppConfig.load()
    except ConfigError as e:
        print(f"Config error: {e}")
        sys.exit(1)


def cmd_channels(config: AppConfig) -> int:
    print("Channels:")
    for name, enabled in list_status(config):
        mark = "✅" if enabled else "  "
        print(f"  {mark} {name:<10} {'enabled' if enabled else 'disabled'}")
    return 0


async def _probe(channels: list[Channel], timeout: float) -> dict[str, bool]:
    """Health-check a throwaway set of channels, then release them."""
    try:
        return await health_check_all(channels, timeout)
    finally:
        for channel in channels:
            try:
                await channel.close()
            except Exception as e:
                logger.warning("Error closing channel '%s': %s", channel.name, e)


def cmd_doctor(config: AppConfig) -> int:
    errors: dict[str, str] = {}
    channels = build_from_config(config, strict=False, errors=errors)

    if not channels and not errors:
        print("No channels enabled. Add a section under \"channels\" in config.json.")
        return 1

    print("🩺 Channel health:")
    results = asyncio.run(_probe(channels, config.dispatch.health_timeout))
    for name, healthy in results.items():
        print(f"  {'✅' if healthy else '❌'} {name:<10} {'healthy' if healthy else 'unreachable'}")
    for name, error in errors.items():
        print(f"  ⚠️  {name:<10} invalid config: {error}")

    ok = all(results.values()) and not errors
    print(f"\n{sum(results.values())}/{len(results) + len(errors)} channels healthy")
    return 0 if ok else 1


async def _run_bot(config: AppConfig) -> None:
    errors: dict[str, str] = {}
    registry = ChannelRegistry.from_config(config, strict=False, errors=errors)
    router = build_default_router(registry)
    supervisor = Supervisor(config, responder=router, registry=registry)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows: Ctrl+C still raises KeyboardInterrupt

    print("clawbridge")
    print(f"  Channels: {', '.join(registry.names) or 'none'}")
    for name, error in errors.items():
        print(f"  ⚠️  {name} skipped: {error}")
    print(f"  Commands: {', '.join(router.prefixes)}")
    print("  Press Ctrl+C to stop.\n")

    await supervisor.run(stop)

    d = supervisor.dispatcher
    if d is not None:
        print(f"\nStopped. processed={d.processed} delivered={d.delivered} failed={d.failed}")


def cmd_start(config: AppConfig) -> int:
    warnings = config.validate()
    if warnings:
        print("Config errors:")
        for w in warnings:
            print(f"  - {w}")
        return 1

    try:
        asyncio.run(_run_bot(config))
    except KeyboardInterrupt:
        print("\nGoodbye!")
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="clawbridge — multi-channel chat bot core")
    parser.add_argument("--config", "-c", help="Path to config.json file")
    parser.add_argument(
        "--log-level",
        default=LOG_LEVEL,
        help=f"Logging level (default: {LOG_LEVEL})",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("channels", help="List channels and whether they are enabled")
    sub.add_parser("doctor", help="Health-check every enabled channel")
    sub.add_parser("start", help="Run all enabled channels")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = _load_config(args.config)
    commands = {"channels": cmd_channels, "doctor": cmd_doctor, "start": cmd_start}
    sys.exit(commands[args.command](config))


if __name__ == "__main__":
    main()
