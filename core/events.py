"""Event channel - publishes operation transitions to in-process subscribers"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.database import now_iso

logger = logging.getLogger(__name__)

MAX_RECENT_EVENTS = 200


@dataclass
class Event:
    """A single published event"""
    event_type: str  # e.g. "operation.completed"
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)
    sequence: int = 0

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "data": self.data,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
        }


class EventBus:
    """Thread-safe publish/subscribe.

    Each subscriber gets a bounded queue; a full queue drops the event for
    that subscriber. A ring buffer of recent events serves pollers via
    ``events_since``.
    """

    def __init__(self, max_recent: int = MAX_RECENT_EVENTS, subscriber_queue_size: int = 100):
        self._lock = threading.Lock()
        self._subscribers: List[queue.Queue] = []
        self._recent: List[Event] = []
        self._max_recent = max_recent
        self._subscriber_queue_size = subscriber_queue_size
        self._sequence = 0

    def publish(self, event_type: str, **data) -> Event:
        with self._lock:
            self._sequence += 1
            event = Event(event_type=event_type, data=data, sequence=self._sequence)
            self._recent.append(event)
            if len(self._recent) > self._max_recent:
                self._recent = self._recent[-self._max_recent:]
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber.put_nowait(event)
            except queue.Full:
                logger.debug(f"Subscriber queue full, dropping {event_type}")
        logger.debug(f"Event {event.sequence}: {event_type}")
        return event

    def subscribe(self) -> queue.Queue:
        """Subscribe to events; returns the queue events are delivered to"""
        subscriber = queue.Queue(maxsize=self._subscriber_queue_size)
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: queue.Queue) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def events_since(self, sequence: int = 0, event_type: Optional[str] = None) -> List[Event]:
        """Recent events with a sequence number greater than the given one"""
        with self._lock:
            events = [e for e in self._recent if e.sequence > sequence]
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        return events

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
