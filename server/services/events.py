"""In-process event bus for pipeline events.

One instance is built by the container and handed to every component that
publishes or listens, so tests can create their own isolated bus.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from core.logging import get_logger

logger = get_logger(__name__)

# Event names
PLAN_COMPILED = "plan.compiled"
QUEUE_ITEM_COMPLETED = "queue.item_completed"
QUEUE_ITEM_RETRY_SCHEDULED = "queue.item_retry_scheduled"
QUEUE_ITEM_DEAD_LETTERED = "queue.item_dead_lettered"
QUEUE_ITEM_SKIPPED = "queue.item_skipped"
CIRCUIT_OPENED = "circuit.opened"
CIRCUIT_CLOSED = "circuit.closed"
HEALING_COMPLETED = "healing.completed"

WILDCARD = "*"

EventHandler = Callable[["Event"], Awaitable[None]]


@dataclass
class Event:
    """A published event."""
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "data": self.data, "timestamp": self.timestamp}


class EventBus:
    """Async publish/subscribe with a bounded history."""

    def __init__(self, history_size: int = 1000):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._history: Deque[Event] = deque(maxlen=history_size)

    def subscribe(self, name: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler for an event name (or '*').

        Returns:
            Callable that removes the subscription
        """
        self._handlers.setdefault(name, []).append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(name, handler)

        return unsubscribe

    def unsubscribe(self, name: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(name, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, name: str, data: Optional[Dict[str, Any]] = None) -> Event:
        """Deliver an event to its subscribers in registration order.

        Handler errors are logged and do not reach the publisher.
        """
        event = Event(name=name, data=data or {})
        self._history.append(event)

        handlers = list(self._handlers.get(name, [])) + list(self._handlers.get(WILDCARD, []))
        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error("Event handler failed", event_name=name, error=str(e))
        return event

    def history(self, name: Optional[str] = None, limit: int = 100) -> List[Event]:
        events = [e for e in self._history if name is None or e.name == name]
        return events[-limit:]
