"""In-memory outbox of published events, kept for delivery and inspection."""

from __future__ import annotations

import copy
from typing import List

from event_bus import Event, validate_event


class Outbox:
    def __init__(self, max_events: int = 1000) -> None:
        self._events: List[Event] = []
        self._max_events = max_events

    def enqueue(self, event: dict) -> None:
        validate_event(event)
        self._events.append(copy.deepcopy(event))
        if len(self._events) > self._max_events:
            del self._events[: len(self._events) - self._max_events]

    def pending(self, name: str | None = None) -> list[dict]:
        if name is None:
            return list(self._events)
        return [event for event in self._events if event.get("name") == name]

    def ack(self, event_id: str) -> bool:
        for idx, event in enumerate(self._events):
            if event.get("meta", {}).get("event_id") == event_id:
                del self._events[idx]
                return True
        return False

    def clear(self) -> None:
        self._events.clear()
