"""Health monitor — periodic channel health probes while the bot runs.

A daemon thread runs `schedule.run_pending()`; each tick submits
`health_check_all` to the bot's event loop and logs channels whose health
changed. The schedule uses the same human-readable expressions everywhere
("every 5 minutes", "every day at 07:30").
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from typing import Callable

import schedule

from clawbridge.channels.registry import ChannelRegistry

logger = logging.getLogger(__name__)

# Callback type: (channel_name, healthy) -> None, fired on every change
OnHealthChange = Callable[[str, bool], None] | None

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_UNITS = {"second": "seconds", "minute": "minutes", "hour": "hours", "day": "days", "week": "weeks"}

_AT_RE = re.compile(r"^(day|monday|tuesday|wednesday|thursday|friday|saturday|sunday) at (\d{1,2}:\d{2})$")
_INTERVAL_RE = re.compile(r"^(\d+) (second|minute|hour|day|week)s?$")


def parse_schedule(scheduler: schedule.Scheduler, expr: str) -> schedule.Job | None:
    """Parse a human-readable schedule expression into an unbound schedule.Job.

    Supported formats:
        "every 30 seconds"
        "every 5 minutes"
        "every day at 07:30"
        "every monday at 09:00"
    """
    expr = " ".join(expr.strip().lower().split())
    if not expr.startswith("every "):
        return None
    rest = expr[len("every "):]

    match = _AT_RE.match(rest)
    if match:
        when, time_str = match.groups()
        try:
            return getattr(scheduler.every(), when).at(time_str)
        except schedule.ScheduleValueError:
            return None

    match = _INTERVAL_RE.match(rest)
    if match:
        interval = int(match.group(1))
        if interval <= 0:
            return None
        return getattr(scheduler.every(interval), _UNITS[match.group(2)])

    return None


class HealthMonitor:
    """Runs channel health checks on a schedule from a background thread.

    Usage::

        monitor = HealthMonitor(registry, loop=asyncio.get_running_loop(), timeout=10)
        monitor.schedule("every 5 minutes")
        monitor.start()  # spawns daemon thread
        # ...
        monitor.stop()
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        loop: asyncio.AbstractEventLoop,
        timeout: float = 10.0,
        on_change: OnHealthChange = None,
    ) -> None:
        self._registry = registry
        self._loop = loop
        self._timeout = timeout
        self._on_change = on_change
        self._scheduler = schedule.Scheduler()
        self._last: dict[str, bool] = {}
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def schedule(self, expr: str) -> bool:
        """Schedule probes. Returns False for an unparseable expression."""
        job = parse_schedule(self._scheduler, expr)
        if job is None:
            logger.warning("Invalid health monitor schedule: %s", expr)
            return False
        job.do(self.check)
        logger.info("Health monitor scheduled: %s", expr)
        return True

    def check(self) -> dict[str, bool]:
        """Run one probe round on the event loop and record changes.

        Called from the monitor thread; never from the loop's own thread.
        """
        future = asyncio.run_coroutine_threadsafe(
            self._registry.health(self._timeout), self._loop
        )
        try:
            results = future.result(timeout=self._timeout + 5)
        except Exception:
            logger.exception("Health monitor round failed")
            return {}

        for name, healthy in results.items():
            previous = self._last.get(name)
            self._last[name] = healthy
            if previous is None and healthy:
                continue
            if previous != healthy:
                if healthy:
                    logger.info("Channel '%s' is healthy again", name)
                else:
                    logger.warning("Channel '%s' is unhealthy", name)
                if self._on_change:
                    self._on_change(name, healthy)
        return results

    def start(self, check_interval: float = 1.0) -> None:
        """Start the background scheduler thread (daemon)."""
        if self._thread and self._thread.is_alive():
            return  # Already running

        self._stop_event.clear()

        def _loop():
            while not self._stop_event.is_set():
                self._scheduler.run_pending()
                self._stop_event.wait(timeout=check_interval)

        self._thread = threading.Thread(target=_loop, daemon=True, name="health-monitor")
        self._thread.start()
        logger.info("Health monitor started")

    def stop(self) -> None:
        """Stop the background scheduler thread."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Health monitor stopped")

    @property
    def last_results(self) -> dict[str, bool]:
        return dict(self._last)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
