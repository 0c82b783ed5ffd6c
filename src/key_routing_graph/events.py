"""
Event notification for graphs, engines and session managers.

An EventBus delivers events synchronously, in subscription order, to every
handler registered for the event's type (plus wildcard handlers). Each
graph, engine or manager receives its bus explicitly; there is no global
emitter.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from .models import utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Names of all events published by the package."""

    # Graph registry
    NODE_ADDED = "nodeAdded"
    NODE_REMOVED = "nodeRemoved"
    CONNECTION_CREATED = "connectionCreated"
    CONNECTION_REMOVED = "connectionRemoved"

    # Execution engine
    NODE_PROCESSING = "nodeProcessing"
    NODE_COMPLETED = "nodeCompleted"
    NODE_ERROR = "nodeError"
    SESSION_RECORDED = "sessionRecorded"
    INTEGRATION_UPDATED = "integrationUpdated"

    # Session lifecycle
    SESSION_CREATED = "sessionCreated"
    SESSION_LOADED = "sessionLoaded"
    SESSION_STARTING = "sessionStarting"
    SESSION_STARTED = "sessionStarted"
    SESSION_STOPPING = "sessionStopping"
    SESSION_STOPPED = "sessionStopped"
    SESSION_ERROR = "sessionError"
    SESSION_DELETED = "sessionDeleted"
    SESSION_UPDATED = "sessionUpdated"
    SERVICE_CONNECTED = "serviceConnected"
    INTEGRATION_ACTIVATED = "integrationActivated"
    INTEGRATION_DEACTIVATED = "integrationDeactivated"
    TEMPLATE_APPLIED = "templateApplied"


@dataclass
class Event:
    """A single published event."""

    type: EventType
    payload: Any = None
    timestamp: datetime = field(default_factory=utc_now)


EventHandler = Callable[[Event], None]


class EventBus:
    """
    Synchronous publish/subscribe dispatcher.

    Handlers run inline during ``emit`` in the order they subscribed. A
    handler that raises is logged and skipped; the remaining handlers still
    receive the event.

    Example:
        >>> bus = EventBus()
        >>> seen = []
        >>> unsubscribe = bus.subscribe(EventType.NODE_ADDED, seen.append)
        >>> bus.emit(EventType.NODE_ADDED, {"id": "svc"})
        >>> unsubscribe()
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = {}

    def subscribe(
        self,
        event_type: EventType | None,
        handler: EventHandler,
    ) -> Callable[[], None]:
        """
        Register a handler.

        Args:
            event_type: Event type to listen for, or None for every event
            handler: Callable receiving the Event

        Returns:
            A callable that removes the subscription
        """
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return unsubscribe

    def unsubscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        """Remove a handler; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event_type: EventType, payload: Any = None) -> Event:
        """
        Publish an event to its subscribers, then to wildcard subscribers.

        Returns:
            The delivered Event
        """
        event = Event(type=event_type, payload=payload)
        handlers = list(self._handlers.get(event_type, [])) + list(self._handlers.get(None, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler {handler!r} failed for '{event_type.value}'")
        return event

    def handler_count(self, event_type: EventType | None = None) -> int:
        """Number of handlers registered for an event type."""
        return len(self._handlers.get(event_type, []))
