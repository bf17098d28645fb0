from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id, get_tenant_id


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._subscribers[event_name].append(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self._subscribers.get(event_name, []):
            handler(event)


event_bus = InProcessEventBus()
published_events: list[dict[str, Any]] = []


def envelope(event_type: str, actor_user_id: str, payload: dict[str, Any], **attributes: Any) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "version": 1,
        **attributes,
        "payload": payload,
    }


def publish(event: dict[str, Any]) -> None:
    if event.get("correlation_id") is None:
        event["correlation_id"] = get_correlation_id()
    if event.get("tenant_id") is None:
        event["tenant_id"] = get_tenant_id()

    published_events.append(event)
    event_type = event.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, event)
