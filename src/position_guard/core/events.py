"""
Event bus and event definitions for the risk core.

Monitors and the emergency reducer publish events here so that alerting
and reporting layers can react without the core depending on them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Callable, List, Optional
from collections import defaultdict
import asyncio
import logging


logger = logging.getLogger(__name__)


# ============================================================================
# Base Event Class
# ============================================================================

@dataclass
class Event:
    """Base class for all events."""
    timestamp: datetime = field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# Risk Events
# ============================================================================

@dataclass
class ExitExecuted(Event):
    """An exit condition triggered and its close was attempted."""
    position_id: str = ""
    domain: str = ""
    exit_kind: str = ""
    reason: str = ""
    success: bool = False
    execution_price: Optional[float] = None
    error: Optional[str] = None


@dataclass
class EmergencyReduceExecuted(Event):
    """A position was reduced or closed by the emergency reducer."""
    position_id: str = ""
    domain: str = ""
    reduced_by: float = 0.0
    original_size: float = 0.0
    new_size: float = 0.0
    reason: str = ""
    simulated: bool = True
    fill_price: Optional[float] = None


@dataclass
class LiquidationRiskDetected(Event):
    """A leveraged position is above the safe risk level."""
    position_id: str = ""
    symbol: str = ""
    risk_level: str = ""
    margin_ratio: float = 0.0
    liquidation_price: float = 0.0
    current_price: float = 0.0
    recommended_action: str = ""


# ============================================================================
# Event Bus
# ============================================================================

class EventBus:
    """
    Event bus for publish-subscribe pattern.

    Subscribers are keyed by event class name and run concurrently; a
    failing subscriber is logged and never affects the publisher.
    """

    def __init__(self):
        """Initialize the event bus."""
        self._subscribers: Dict[str, List[Callable]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self.logger = logging.getLogger(f"{__name__}.EventBus")
        self.published_count = 0

    async def subscribe(self, event_type: str, callback: Callable):
        """
        Subscribe to an event type.

        Args:
            event_type: Event class name to subscribe to
            callback: Async callback function
        """
        async with self._lock:
            self._subscribers[event_type].append(callback)
            self.logger.debug(f"Subscribed to {event_type}: {callback.__name__}")

    async def unsubscribe(self, event_type: str, callback: Callable):
        """Remove a previously registered callback."""
        async with self._lock:
            if callback in self._subscribers[event_type]:
                self._subscribers[event_type].remove(callback)

    async def publish(self, event: Event):
        """
        Publish an event to all subscribers.

        Args:
            event: Event object to publish
        """
        event_type = event.__class__.__name__
        self.published_count += 1

        async with self._lock:
            callbacks = self._subscribers[event_type].copy()

        if not callbacks:
            return

        tasks = []
        for callback in callbacks:
            try:
                tasks.append(asyncio.create_task(callback(event)))
            except Exception as e:
                self.logger.error(f"Error creating task for {callback.__name__}: {e}")

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for i, result in enumerate(results):
                if isinstance(result, Exception):
                    self.logger.error(
                        f"Error in subscriber {callbacks[i].__name__}: {result}"
                    )
