"""Supervisor — runs the whole core through its lifecycle.

    UNINITIALIZED → BUILDING → RUNNING → DRAINING → STOPPED

BUILDING constructs the registry, RUNNING has listeners and the dispatcher
active, DRAINING stops listeners and lets the dispatcher empty the queue,
STOPPED closes every channel. No state is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from clawbridge.channels.registry import ChannelRegistry, ListenerPolicy
from clawbridge.config import AppConfig
from clawbridge.heartbeat.scheduler import HealthMonitor
from clawbridge.queue.dispatcher import Dispatcher, Responder

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BUILDING = "building"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


_TRANSITIONS = {
    LifecycleState.UNINITIALIZED: LifecycleState.BUILDING,
    LifecycleState.BUILDING: LifecycleState.RUNNING,
    LifecycleState.RUNNING: LifecycleState.DRAINING,
    LifecycleState.DRAINING: LifecycleState.STOPPED,
}


class Supervisor:
    """Owns the inbound queue and drives build, run and graceful shutdown.

    Usage::

        supervisor = Supervisor(config, responder=router)
        stop = asyncio.Event()
        await supervisor.run(stop)  # returns after stop.set() and a full drain

    Pass `registry` to run with pre-built channels (tests, embedding, or a
    responder that needs to see the channels).
    """

    def __init__(
        self,
        config: AppConfig,
        responder: Responder,
        registry: ChannelRegistry | None = None,
    ) -> None:
        self._config = config
        self._responder = responder
        self._registry = registry
        self._state = LifecycleState.UNINITIALIZED
        self._queue: asyncio.Queue | None = None
        self.dispatcher: Dispatcher | None = None
        self.build_errors: dict[str, str] = {}

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def registry(self) -> ChannelRegistry | None:
        return self._registry

    def _advance(self, target: LifecycleState) -> None:
        if _TRANSITIONS.get(self._state) is not target:
            raise RuntimeError(f"Invalid lifecycle transition {self._state.value} → {target.value}")
        logger.info("Lifecycle: %s → %s", self._state.value, target.value)
        self._state = target

    def build(self) -> ChannelRegistry:
        """BUILDING: one channel per enabled section; bad sections are skipped."""
        self._advance(LifecycleState.BUILDING)
        if self._registry is None:
            self._registry = ChannelRegistry.from_config(
                self._config, strict=False, errors=self.build_errors
            )
        if not len(self._registry):
            logger.warning("No channels enabled; nothing will be received")
        return self._registry

    async def run(self, stop: asyncio.Event) -> None:
        """Build, run until `stop` is set, then drain and stop."""
        registry = self.build()
        settings = self._config.dispatch

        self._queue = asyncio.Queue(maxsize=max(0, settings.inbound_queue_size))
        self.dispatcher = Dispatcher(
            registry,
            self._responder,
            send_retries=settings.send_retries,
            retry_delay=settings.retry_delay,
        )

        self._advance(LifecycleState.RUNNING)
        dispatch_task = asyncio.create_task(self.dispatcher.run(self._queue), name="dispatch")
        await registry.start(self._queue, ListenerPolicy.from_settings(settings))

        monitor = None
        if self._config.health_monitor.schedule:
            monitor = HealthMonitor(
                registry, asyncio.get_running_loop(), timeout=settings.health_timeout
            )
            if monitor.schedule(self._config.health_monitor.schedule):
                monitor.start()
            else:
                monitor = None

        try:
            await stop.wait()
        finally:
            if monitor is not None:
                await asyncio.to_thread(monitor.stop)
            await self._drain(registry, dispatch_task)

    async def _drain(self, registry: ChannelRegistry, dispatch_task: asyncio.Task) -> None:
        """DRAINING → STOPPED: no new input, dispatch what is queued, close up."""
        self._advance(LifecycleState.DRAINING)
        await registry.stop_listeners(grace=self._config.dispatch.shutdown_grace)

        if not dispatch_task.done():
            await Dispatcher.close(self._queue)
            await dispatch_task

        await registry.close_all()
        self._advance(LifecycleState.STOPPED)
