"""Event bus for loop and adapter notifications.

Provides a simple publish-subscribe channel between the engine and its
observers (CLI, dashboards, tests).
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from alex.core.types import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events published by the engine."""

    LOOP_STARTED = "loop.started"
    LOOP_OUTPUT = "loop.output"
    LOOP_PAUSED = "loop.paused"
    LOOP_RESUMED = "loop.resumed"
    LOOP_STOPPED = "loop.stopped"
    LOOP_COMPLETED = "loop.completed"
    LOOP_ERROR = "loop.error"
    LOOP_ITERATION = "loop.iteration"
    LOOP_CRITERIA = "loop.criteria"
    LOOP_ANALYSIS = "loop.analysis"

    ADAPTERS_RELOADED = "adapters.reloaded"
    ADAPTERS_ERROR = "adapters.error"


@dataclass
class Event:
    """A single notification."""

    type: EventType
    loop_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "loop_id": self.loop_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventCallback = Callable[[Event], Any]


class EventBus:
    """Simple event bus for component communication.

    Callbacks may be plain functions or coroutine functions. Subscribing with
    ``None`` receives every event.
    """

    def __init__(self):
        self._subscribers: defaultdict[EventType | None, list[EventCallback]] = defaultdict(list)

    def subscribe(self, event_type: EventType | None, callback: EventCallback) -> None:
        """Subscribe to an event type.

        Args:
            event_type: Type of event to subscribe to, or None for all
            callback: Callback function
        """
        self._subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: EventType | None, callback: EventCallback) -> None:
        try:
            self._subscribers[event_type].remove(callback)
        except ValueError:
            pass

    async def publish(self, event: Event) -> None:
        """Publish an event to its subscribers.

        A failing callback is logged and does not stop delivery to the rest.
        """
        callbacks = [*self._subscribers[event.type], *self._subscribers[None]]
        for callback in callbacks:
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in event handler for {event.type.value}: {e}")

    async def emit(
        self,
        event_type: EventType,
        loop_id: str | None = None,
        **data: Any,
    ) -> Event:
        event = Event(type=event_type, loop_id=loop_id, data=data)
        await self.publish(event)
        return event
