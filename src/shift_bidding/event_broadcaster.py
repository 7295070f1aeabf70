"""
Event Broadcaster for the Shift Bidding core

Bid line state changes are published after their transaction commits.
Delivery is best effort: a failing subscriber or publisher never undoes
the state change that produced the event.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .models import utcnow


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BidLineEvent:
    """A committed bid line transition"""
    action: str
    bid_line_id: int
    line_number: str
    operation_id: int
    status: str
    taken_by: Optional[str] = None
    actor_id: Optional[int] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "bid_line_id": self.bid_line_id,
            "line_number": self.line_number,
            "operation_id": self.operation_id,
            "status": self.status,
            "taken_by": self.taken_by,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
        }


Subscriber = Callable[[BidLineEvent], None]


class EventBroadcaster:
    """Base class for event fan-out"""

    def publish(self, event: BidLineEvent):
        raise NotImplementedError


class NullEventBroadcaster(EventBroadcaster):
    """Drops every event"""

    def publish(self, event: BidLineEvent):
        logger.debug(f"Dropping event {event.action} for bid line {event.bid_line_id}")


class InMemoryEventBroadcaster(EventBroadcaster):
    """Fans events out to in-process subscriber callables; publish may be called from any thread"""

    def __init__(self, history_size: int = 100):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self.history_size = history_size
        self.history: List[BidLineEvent] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that removes it again"""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def recent_events(self) -> List[BidLineEvent]:
        with self._lock:
            return list(self.history)

    def publish(self, event: BidLineEvent):
        # Callbacks run outside the lock
        with self._lock:
            self.history.append(event)
            if len(self.history) > self.history_size:
                del self.history[:-self.history_size]
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Subscriber {callback!r} failed on {event.action} "
                             f"for bid line {event.bid_line_id}: {e}", exc_info=True)


def publish_safely(broadcaster: Optional[EventBroadcaster], event: BidLineEvent) -> bool:
    """Publish and swallow failures; the state change has already been committed"""
    if broadcaster is None:
        return False
    try:
        broadcaster.publish(event)
        return True
    except Exception as e:
        logger.error(f"Failed to publish {event.action} for bid line {event.bid_line_id}: {e}",
                     exc_info=True)
        return False
