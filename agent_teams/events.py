from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, DefaultDict, Dict, List, Optional

from agent_teams.models import DispatchEvent
from agent_teams.store import new_id, utc_now

logger = logging.getLogger(__name__)

EventHandler = Callable[[DispatchEvent], Any]


class EventBus:
    """In-process publish/subscribe for dispatch events.

    Nothing is queued or persisted: a handler registered after an event was
    published never sees it. Publishers have already written their state
    change, so the bus is only a notification side-channel.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: DispatchEvent) -> None:
        for handler in list(self._handlers.get(event.type, ())):
            try:
                handler(event)
            except Exception:
                logger.warning("Event handler %r failed for %s", handler, event.type, exc_info=True)

    def handler_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, ()))

    def clear(self) -> None:
        self._handlers.clear()


def make_event(
    event_type: str,
    team: str,
    payload: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
    event_id: Optional[str] = None,
) -> DispatchEvent:
    return DispatchEvent(
        id=event_id or new_id("EVT"),
        type=event_type,
        team=team,
        timestamp=timestamp or utc_now(),
        payload=dict(payload or {}),
    )
