"""Notification fan-out and live ride updates.

Notifications are written as rows inside the ride transaction (so they commit or
roll back with it) and handed to the dispatcher only after commit. Dispatcher
and live-channel failures are logged and never undo the ride change.
"""
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import threading

from sqlmodel import SQLModel

from models import Notification

logger = logging.getLogger(__name__)


def rider_topic(user_id: int) -> str:
    return f"user_{user_id}"


def driver_topic(driver_id: int) -> str:
    return f"driver_{driver_id}"


class Notifier:
    """Push dispatcher. This one only logs; deployments swap in a real one."""

    def notify(self, user_id: int, title: str, message: str, type: str, data: Optional[dict]) -> None:
        logger.info("notify user=%s type=%s title=%r", user_id, type, title)


class LiveChannel:
    """In-process pub/sub keyed by topic (``user_<id>`` / ``driver_<id>``)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Callable[[str, dict], None]]] = defaultdict(list)

    def subscribe(self, topic: str, callback: Callable[[str, dict], None]) -> None:
        with self._lock:
            self._subscribers[topic].append(callback)

    def unsubscribe(self, topic: str, callback: Callable[[str, dict], None]) -> None:
        with self._lock:
            if callback in self._subscribers.get(topic, []):
                self._subscribers[topic].remove(callback)

    def publish(self, topic: str, event: str, payload: dict) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(topic, []))
        for callback in callbacks:
            callback(event, payload)


notifier = Notifier()
channel = LiveChannel()


def _jsonable(value: Any) -> Any:
    if isinstance(value, SQLModel):
        return value.model_dump(mode="json")
    return value


class Outbox:
    """Side effects of one transaction, released by ``deliver`` after commit."""

    def __init__(self, session):
        self.session = session
        self.notifications: List[Notification] = []
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    def notify(self, user_id: int, title: str, message: str, type: str = "ride", data: Optional[dict] = None):
        note = Notification(user_id=user_id, title=title, message=message, type=type, data=data)
        self.session.add(note)
        self.notifications.append(note)
        return note

    def publish(self, topic: str, event: str, **payload: Any) -> None:
        self.events.append((topic, event, payload))

    def deliver(self) -> None:
        for note in self.notifications:
            try:
                notifier.notify(note.user_id, note.title, note.message, note.type, note.data)
            except Exception:
                logger.exception("notification to user %s failed", note.user_id)
        for topic, event, payload in self.events:
            try:
                channel.publish(topic, event, {k: _jsonable(v) for k, v in payload.items()})
            except Exception:
                logger.exception("live update %s on %s failed", event, topic)
