"""Observability events emitted by the router.

Every routing decision worth auditing (cache hits, coalesced callers,
fallbacks, breaker transitions, health probes) is recorded as a RouterEvent
in the owning router's EventLog and logged through the ``ai_router.events``
logger. The log is instance-scoped: each AIRouter owns one.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger("ai_router.events")


class RouterEventType(Enum):
    """Types of events emitted while routing."""

    ROUTE_REQUEST = "route_request"
    ROUTE_SUCCESS = "route_success"
    ROUTE_FAILURE = "route_failure"
    CACHE_HIT = "cache_hit"
    COALESCED = "coalesced"
    PROVIDER_SKIPPED = "provider_skipped"
    PROVIDER_FAILURE = "provider_failure"
    PROVIDER_FALLBACK = "provider_fallback"
    CIRCUIT_OPEN = "circuit_open"
    CIRCUIT_HALF_OPEN = "circuit_half_open"
    CIRCUIT_CLOSE = "circuit_close"
    HEALTH_PROBE = "health_probe"
    PROVIDER_TOGGLED = "provider_toggled"


@dataclass
class RouterEvent:
    """An event emitted by the router."""

    event_type: RouterEventType
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventListener = Callable[[RouterEvent], None]


class EventLog:
    """Bounded in-memory event history with listener callbacks."""

    def __init__(self, max_events: int = 1000):
        self._events: Deque[RouterEvent] = deque(maxlen=max_events or None)
        self._max_events = max_events
        self._listeners: List[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event_type: RouterEventType, data: Dict[str, Any]) -> RouterEvent:
        """Record an event, log it and notify listeners.

        A failing listener is logged and skipped; it never breaks routing.
        """
        event = RouterEvent(event_type=event_type, data=data)
        if self._max_events:
            self._events.append(event)

        logger.debug("Router event: %s data=%s", event_type.value, data)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener %r failed for %s", listener, event_type.value)
        return event

    def get_events(self, event_type: Optional[RouterEventType] = None) -> List[RouterEvent]:
        """Return recorded events in emission order, optionally filtered."""
        if event_type is None:
            return list(self._events)
        return [e for e in self._events if e.event_type == event_type]

    def clear(self) -> None:
        self._events.clear()
