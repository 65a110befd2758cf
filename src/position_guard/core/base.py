"""
Base classes for risk-core components.

Provides:
- Component: lifecycle, health check and logging shared by all components
- ScheduledSweep: a cancellable periodic task with a per-tick error boundary,
  the single abstraction behind the exit monitor, the liquidation-risk
  monitor and the idempotency cleanup job
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Callable, Dict, Any

from position_guard.core.events import EventBus
from position_guard.utils.logger import PerformanceLogger

logger = logging.getLogger(__name__)


# ============================================================================
# Base Component
# ============================================================================

class Component(ABC):
    """
    Base class for all risk-core components.

    Provides:
    - Lifecycle management (started/stopped state)
    - Health check support
    - Component name and logging
    """

    def __init__(self, name: str, event_bus: Optional[EventBus] = None):
        """
        Initialize the component.

        Args:
            name: Component name for logging and identification
            event_bus: Optional event bus for pub/sub
        """
        self.name = name
        self.event_bus = event_bus
        self._started = False
        self._started_at: Optional[datetime] = None
        self._logger = logging.getLogger(f"{self.__class__.__module__}.{name}")

    async def start(self) -> None:
        """Start the component."""
        if self._started:
            self._logger.warning("%s already started", self.name)
            return

        self._logger.info("Starting %s", self.name)
        self._started = True
        self._started_at = datetime.utcnow()

    async def stop(self) -> None:
        """Stop the component gracefully."""
        if not self._started:
            return

        self._logger.info("Stopping %s", self.name)
        self._started = False

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform health check and return status.

        Returns:
            Dictionary with health status:
            {
                "component": str,
                "status": "healthy" | "degraded" | "stopped",
                "uptime_seconds": float,
                "details": {...}
            }
        """
        return {
            "component": self.name,
            "status": "healthy" if self._started else "stopped",
            "uptime_seconds": self.uptime_seconds,
            "details": {},
        }

    @property
    def is_started(self) -> bool:
        """Check if component is started."""
        return self._started

    @property
    def uptime_seconds(self) -> float:
        """Get component uptime in seconds."""
        if not self._started_at or not self._started:
            return 0.0
        return (datetime.utcnow() - self._started_at).total_seconds()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name}, started={self._started})"


# ============================================================================
# Scheduled Sweep
# ============================================================================

class ScheduledSweep(Component):
    """
    Base class for components that run a sweep on a fixed interval.

    The loop runs one tick, then waits until the next deadline. Ticks never
    overlap: a tick that overruns its interval delays the next one instead.
    Every tick is wrapped in its own error boundary, so an escaping
    exception is logged and the next tick still fires.

    stop() wakes the pending wait; an in-flight tick is allowed to finish.
    Both start() and stop() are safe to call from any state.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        event_bus: Optional[EventBus] = None,
        run_immediately: bool = True,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize scheduled sweep.

        Args:
            name: Component name
            interval_seconds: Seconds between tick starts
            event_bus: Event bus for pub/sub
            run_immediately: Run the first tick on start instead of after one interval
            clock: Monotonic clock used for tick scheduling
        """
        super().__init__(name, event_bus)
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False
        self._perf = PerformanceLogger(self._logger)

        # Stats
        self.tick_count = 0
        self.failed_ticks = 0
        self.consecutive_failures = 0
        self.last_tick_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    async def start(self) -> None:
        """Start the sweep loop. Logs and returns if already running."""
        if self._running:
            self._logger.info("%s already running", self.name)
            return

        await super().start()
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=f"{self.name}_loop")
        self._logger.info("%s sweeping every %.0fs", self.name, self.interval_seconds)

    async def stop(self) -> None:
        """Stop the sweep loop, letting an in-flight tick complete."""
        if not self._running and self._task is None:
            return

        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            await task

        await super().stop()
        self._logger.info("%s stopped", self.name)

    async def _run_loop(self) -> None:
        """Tick, then wait out the rest of the interval, until stopped."""
        if not self.run_immediately:
            if await self._wait(self.interval_seconds):
                return

        while self._running:
            tick_started = self._clock()
            await self.run_tick()

            remaining = self.interval_seconds - (self._clock() - tick_started)
            if await self._wait(max(0.0, remaining)):
                return

    async def _wait(self, timeout: float) -> bool:
        """Wait for the stop signal. Returns True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_tick(self) -> None:
        """Run one sweep inside the error boundary."""
        self.tick_count += 1
        try:
            with self._perf.timer(f"{self.name}.sweep"):
                await self.sweep()
            self.last_tick_at = datetime.utcnow()
            self.consecutive_failures = 0
        except Exception as e:
            self.failed_ticks += 1
            self.consecutive_failures += 1
            self.last_error = str(e)
            self._logger.exception("%s sweep failed: %s", self.name, e)

    @abstractmethod
    async def sweep(self) -> None:
        """One unit of periodic work (MUST be implemented by subclasses)."""
        raise NotImplementedError("Subclasses must implement sweep()")

    @property
    def is_running(self) -> bool:
        """Check if the sweep loop is running."""
        return self._running

    def get_stats(self) -> Dict[str, Any]:
        """Get sweep statistics."""
        return {
            "name": self.name,
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "tick_count": self.tick_count,
            "failed_ticks": self.failed_ticks,
            "consecutive_failures": self.consecutive_failures,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_error": self.last_error,
        }

    async def health_check(self) -> Dict[str, Any]:
        health = await super().health_check()
        if self._running and self.consecutive_failures:
            health["status"] = "degraded"
        health["details"] = self.get_stats()
        return health
