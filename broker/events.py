# device_bridge/broker/events.py

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

import config.settings as settings

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CONNECTED    = "connected"
    DISCONNECTED = "disconnected"
    SUBSCRIBED   = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    PUBLISHED    = "published"


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    session_id: Optional[str]
    client_id: Optional[str] = None
    topics: Tuple[str, ...] = ()
    detail: str = ""
    ts: int = 0

    def to_dict(self) -> dict:
        return {
            "kind":      self.kind.value,
            "sessionId": self.session_id,
            "clientId":  self.client_id,
            "topics":    list(self.topics),
            "detail":    self.detail,
            "ts":        self.ts,
        }


Listener = Callable[[LifecycleEvent], None]


class EventBus:
    """
    Side channel for broker lifecycle events. The broker only emits here;
    logging and the live web feed are listeners attached by the entry points.
    """
    def __init__(self, history: Optional[int] = None):
        self._listeners: List[Listener] = []
        self.history = deque(maxlen=settings.EVENT_HISTORY if history is None else history)

    def add_listener(self, listener: Listener) -> Listener:
        self._listeners.append(listener)
        return listener

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listeners(self) -> tuple:
        return tuple(self._listeners)

    def emit(self,
             kind: EventKind,
             session_id: Optional[str] = None,
             client_id: Optional[str] = None,
             topics=(),
             detail: str = "") -> LifecycleEvent:
        event = LifecycleEvent(kind=kind,
                               session_id=session_id,
                               client_id=client_id,
                               topics=tuple(topics),
                               detail=detail,
                               ts=int(time.time() * 1000))
        self.history.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"event listener {listener!r} failed on {kind.value}")
        return event


def log_event(event: LifecycleEvent) -> None:
    """Listener writing each lifecycle event to the log."""
    topics = ", ".join(event.topics)
    if event.kind == EventKind.CONNECTED:
        logging.info(f"MQTT client connected: {event.client_id} ({event.session_id})")
    elif event.kind == EventKind.DISCONNECTED:
        logging.info(f"MQTT client disconnected: {event.client_id} ({event.detail})")
    elif event.kind == EventKind.SUBSCRIBED:
        logging.info(f"MQTT subscribe {event.client_id} [{topics}]")
    elif event.kind == EventKind.UNSUBSCRIBED:
        logging.info(f"MQTT unsubscribe {event.client_id} [{topics}]")
    else:
        logging.info(f"MQTT publish {topics} from {event.client_id or '__system__'}")
