"""
In-memory threat timeline.

Newest event first, bounded: appending past capacity drops the oldest
entries. Events are never removed individually.
"""

import logging
from collections import deque
from typing import Any, Deque, Dict, Iterator, List, Optional

from .models import ThreatEvent

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50


class EventStore:

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        # appendleft on a bounded deque discards from the right (oldest)
        self._events: Deque[ThreatEvent] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._events.maxlen

    def append(self, event: ThreatEvent) -> None:
        if len(self._events) == self.capacity:
            logger.debug(f"Timeline full, evicting {self._events[-1].id}")
        self._events.appendleft(event)

    def list(self) -> List[ThreatEvent]:
        """Snapshot of the timeline, newest first."""
        return list(self._events)

    def latest(self) -> Optional[ThreatEvent]:
        return self._events[0] if self._events else None

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [event.to_dict() for event in self._events]

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[ThreatEvent]:
        return iter(self.list())
