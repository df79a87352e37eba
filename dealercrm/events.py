from __future__ import annotations

import logging
import uuid
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from dealercrm.context import get_correlation_id


logger = logging.getLogger("dealercrm.events")

SYSTEM_STARTED = "system.started"
LEAD_CREATED = "lead.created"
LEAD_UPDATED = "lead.updated"
LEAD_STATUS_CHANGED = "lead.status_changed"
LEAD_DELETED = "lead.deleted"
USER_CREATED = "user.created"
USER_DELETED = "user.deleted"

DOMAIN_EVENT_TYPES = (
    LEAD_CREATED,
    LEAD_UPDATED,
    LEAD_STATUS_CHANGED,
    LEAD_DELETED,
    USER_CREATED,
    USER_DELETED,
)

# most recent envelopes only; older ones drop off the left
RECENT_EVENTS_LIMIT = 1000
published_events: deque[dict[str, Any]] = deque(maxlen=RECENT_EVENTS_LIMIT)


@dataclass(frozen=True, slots=True)
class DomainEvent:
    name: str
    envelope: dict[str, Any]

    @property
    def actor_user_id(self) -> int | None:
        return self.envelope.get("actor_user_id")

    @property
    def payload(self) -> dict[str, Any]:
        return self.envelope.get("payload") or {}


EventHandler = Callable[[DomainEvent], None]


class EventBus:
    """Synchronous fan-out to in-process subscribers.

    Handlers run inside the publisher's transaction, before commit, so a handler
    that raises aborts the write that produced the event.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_type]:
            self._subscribers[event_type].append(handler)

    def subscriber_count(self, event_type: str) -> int:
        return len(self._subscribers.get(event_type, []))

    def dispatch(self, event_type: str, envelope: dict[str, Any]) -> None:
        event = DomainEvent(name=event_type, envelope=envelope)
        for handler in list(self._subscribers.get(event_type, [])):
            handler(event)


event_bus = EventBus()


def publish(event_type: str, *, actor_user_id: int | None, payload: dict[str, Any]) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "correlation_id": get_correlation_id(),
        "version": 1,
        "payload": payload,
    }
    published_events.append(envelope)
    event_bus.dispatch(event_type, envelope)
    return envelope
