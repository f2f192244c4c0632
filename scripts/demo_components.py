#!/usr/bin/env python3
"""Quick demo of the dispatch core — no tokens or network needed."""

import asyncio

from clawbridge.agent.router import build_default_router
from clawbridge.channels.echo import EchoChannel
from clawbridge.channels.registry import ChannelRegistry, list_status
from clawbridge.config import AppConfig
from clawbridge.supervisor import Supervisor

config = AppConfig.from_dict({
    "channels": {"echo": {}, "telegram": {"bot_token": "123:demo"}},
    "dispatch": {"shutdown_grace": 1},
})

# --- Channel status ---
print("=== Channel Status ===")
for name, enabled in list_status(config):
    print(f"  {name:<10} {'enabled' if enabled else 'disabled'}")
print()

# --- Router ---
echo = EchoChannel()
registry = ChannelRegistry([echo])
router = build_default_router(registry)
print("=== Router ===")
print(f"  Commands: {router.prefixes}")
print()


async def run_demo():
    supervisor = Supervisor(config, responder=router, registry=registry)
    stop = asyncio.Event()
    task = asyncio.create_task(supervisor.run(stop))

    for text in ("/ping", "/channels", "/bogus"):
        await echo.inject(text, sender_id="demo-user")

    while len(echo.sent) < 3:
        await asyncio.sleep(0.01)
    stop.set()
    await task
    return supervisor


# --- Supervisor round trip ---
supervisor = asyncio.run(run_demo())
print("=== Supervisor ===")
for reply, recipient in echo.sent:
    print(f"  → {recipient}: {reply}")
d = supervisor.dispatcher
print(f"  State: {supervisor.state.value}")
print(f"  processed={d.processed} delivered={d.delivered} failed={d.failed}")
print()

print("All components working!")
