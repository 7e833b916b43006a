"""
Typed engine event channel.

Every event lands in a bounded in-memory log (for the status API) and is
pushed to any subscriber queues.
"""

import queue
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List


class EventType(Enum):
    HEARTBEAT = "heartbeat"
    BET_PLACED = "bet_placed"
    BET_RESOLVED = "bet_resolved"
    CORRECTION_UPDATED = "correction_updated"
    EMERGENCY_PAUSE_ENTERED = "emergency_pause_entered"
    EMERGENCY_PAUSE_EXITED = "emergency_pause_exited"
    COOLDOWN = "cooldown"
    ENGINE_STARTED = "engine_started"
    ENGINE_STOPPED = "engine_stopped"
    TARGET_HIT = "target_hit"
    TIME_UP = "time_up"
    LOG = "log"
    ERROR = "error"


@dataclass
class EngineEvent:
    type: EventType
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "time": self.timestamp.isoformat(),
            "data": self.data,
        }


class EventChannel:
    """Bounded event log plus fan-out to subscriber queues"""

    def __init__(self, max_events: int = 100):
        self._events = deque(maxlen=max_events)
        self._subscribers: List[queue.Queue] = []
        self._lock = threading.Lock()

    def emit(self, event_type: EventType, **data) -> EngineEvent:
        event = EngineEvent(type=event_type, data=data)
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)
        for q in subscribers:
            try:
                q.put_nowait(event)
            except queue.Full:
                pass  # Slow subscriber drops events, the log keeps them
        return event

    def log(self, tag: str, message: str) -> EngineEvent:
        """Print a bracket-tagged line and keep it in the event log."""
        print(f"[{tag}] {message}")
        return self.emit(EventType.LOG, tag=tag, message=message)

    def subscribe(self, maxsize: int = 1000) -> queue.Queue:
        q = queue.Queue(maxsize=maxsize)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue):
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def recent(self, limit: int = None, event_type: EventType = None) -> List[EngineEvent]:
        with self._lock:
            events = list(self._events)
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if limit is not None:
            events = events[-limit:]
        return events

    def __len__(self):
        with self._lock:
            return len(self._events)
