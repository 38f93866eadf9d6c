from typing import Dict, List, Callable, Optional
from dataclasses import dataclass, field
from collections import deque
from enum import Enum
import logging
import threading
import time

from network.protocol import Notification, RatingsRefreshedData, ThumbnailsReadyData


class EventType(Enum):
    # Pipeline events
    THUMBNAILS_READY = "thumbnails:ready"
    RATINGS_REFRESHED = "ratings:refreshed"


@dataclass
class EventData:
    event_type: EventType
    source: str  # Source component name
    timestamp: float


@dataclass
class ThumbnailsReadyEventData(EventData):
    payload: ThumbnailsReadyData = field(default_factory=ThumbnailsReadyData)


@dataclass
class RatingsRefreshedEventData(EventData):
    payload: RatingsRefreshedData = field(default_factory=RatingsRefreshedData)


def thumbnails_ready_event(source: str, photo_id: str, thumbnail_url: str, retina_url: str) -> ThumbnailsReadyEventData:
    return ThumbnailsReadyEventData(
        event_type=EventType.THUMBNAILS_READY,
        source=source,
        timestamp=time.time(),
        payload=ThumbnailsReadyData(id=photo_id, thumbnail_url=thumbnail_url, thumbnail_retina_url=retina_url),
    )


def ratings_refreshed_event(source: str, ratings: Dict[str, int]) -> RatingsRefreshedEventData:
    return RatingsRefreshedEventData(
        event_type=EventType.RATINGS_REFRESHED,
        source=source,
        timestamp=time.time(),
        payload=RatingsRefreshedData(ratings=dict(ratings)),
    )


def to_notification(event_data: EventData) -> Notification:
    payload = getattr(event_data, "payload", None)
    return Notification(
        type=event_data.event_type.value,
        data=payload.model_dump() if payload is not None else {},
    )


class EventSystem:
    def __init__(self):
        self._subscribers: Dict[EventType, List[Callable]] = {}
        self._event_history: deque[EventData] = deque(maxlen=500)
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, callback: Callable[[EventData], None]):
        with self._lock:
            if event_type not in self._subscribers:
                self._subscribers[event_type] = []
            self._subscribers[event_type].append(callback)
        logging.debug(f"Subscribed to {event_type.value}: {getattr(callback, '__name__', repr(callback))}")

    def unsubscribe(self, event_type: EventType, callback: Callable[[EventData], None]):
        with self._lock:
            if event_type in self._subscribers:
                try:
                    self._subscribers[event_type].remove(callback)
                    logging.debug(f"Unsubscribed from {event_type.value}: {getattr(callback, '__name__', repr(callback))}")
                except ValueError:
                    logging.warning(f"Callback not found for {event_type.value}")

    def publish(self, event_data: EventData):
        with self._lock:
            event_type = event_data.event_type
            self._event_history.append(event_data)
            # Snapshot the subscriber list so callbacks can safely call subscribe/unsubscribe.
            callbacks = list(self._subscribers.get(event_type, []))

        for callback in callbacks:
            try:
                callback(event_data)
            except Exception as e:
                # why: isolate handler crashes so one broken subscriber can't block others
                logging.error(f"Error in event callback for {event_type.value}: {e}", exc_info=True)

        logging.debug("Published event: %s from %s", event_type.value, event_data.source)

    def get_event_history(self, event_type: Optional[EventType] = None) -> List[EventData]:
        with self._lock:
            history = list(self._event_history)
        if event_type:
            return [e for e in history if e.event_type == event_type]
        return history

    def clear_history(self):
        with self._lock:
            self._event_history.clear()
