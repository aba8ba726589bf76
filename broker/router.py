# device_bridge/broker/router.py

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

import config.settings as settings
from common.errors import DeliveryFailure, ProtocolError, TransportFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message:
    topic: str
    payload: bytes
    qos: int = 0
    retain: bool = False


# ─── Topic syntax ──────────────────────────────────────────────────────────

def validate_topic(topic: str) -> None:
    """A topic name being published to: non-empty, no wildcards."""
    if not topic:
        raise ProtocolError("empty topic name")
    if "+" in topic or "#" in topic:
        raise ProtocolError(f"wildcards are not allowed in a published topic: {topic!r}")


def validate_filter(filt: str) -> None:
    """A subscription filter: '+' fills a whole level, '#' only as the last level."""
    if not filt:
        raise ProtocolError("empty topic filter")
    parts = filt.split("/")
    last = len(parts) - 1
    for i, part in enumerate(parts):
        if "#" in part and (part != "#" or i != last):
            raise ProtocolError(f"'#' must be the whole last level: {filt!r}")
        if "+" in part and part != "+":
            raise ProtocolError(f"'+' must be a whole level: {filt!r}")


def match_topic(filt: str, topic: str) -> bool:
    """
    MQTT-style match: '+' matches one level, '#' matches all remaining
    levels (including none, so 'a/#' matches 'a'). Topics starting with '$'
    are never matched by a leading wildcard.
    """
    f_parts = filt.split("/")
    t_parts = topic.split("/")

    if topic.startswith("$") and f_parts[0] in ("+", "#"):
        return False

    for i, fp in enumerate(f_parts):
        if fp == "#":
            return True
        if i >= len(t_parts):
            return False
        if fp == "+":
            continue
        if fp != t_parts[i]:
            return False

    # only match if filter and topic have same number of levels
    return len(t_parts) == len(f_parts)


# ─── Router ────────────────────────────────────────────────────────────────

class TopicRouter:
    """
    Subscription table and retained-message store shared by every session.

    Sinks are the objects messages are written to, normally a broker Session.
    A sink only needs ``async deliver(message, qos)``.
    """
    def __init__(self,
                 write_timeout: Optional[float] = None,
                 max_retained: Optional[int] = None):
        self.write_timeout = settings.WRITE_TIMEOUT if write_timeout is None else write_timeout
        self.max_retained  = settings.MAX_RETAINED if max_retained is None else max_retained

        # session_id -> sink
        self._sinks: Dict[str, object] = {}
        # session_id -> {topic_filter: granted qos}
        self._subscriptions: Dict[str, Dict[str, int]] = {}
        # exact topic -> last retained Message, oldest first
        self._retained: "OrderedDict[str, Message]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def attach(self, session_id: str, sink) -> None:
        async with self._lock:
            self._sinks[session_id] = sink

    async def subscribe(self, session_id: str, filt: str, qos: int = 0) -> int:
        """
        Record `filt` for the session and deliver matching retained messages.
        Returns the number of retained messages delivered; subscribing again
        to a filter the session already holds changes nothing.
        """
        validate_filter(filt)
        async with self._lock:
            filters = self._subscriptions.setdefault(session_id, {})
            if filt in filters:
                return 0
            filters[filt] = qos
            sink = self._sinks.get(session_id)
            retained = [m for t, m in self._retained.items() if match_topic(filt, t)]

        delivered = 0
        for msg in retained:
            if await self._deliver(session_id, sink, msg, min(msg.qos, qos)):
                delivered += 1
        return delivered

    async def unsubscribe(self, session_id: str, filt: str) -> bool:
        async with self._lock:
            filters = self._subscriptions.get(session_id)
            if not filters or filt not in filters:
                return False
            del filters[filt]
            return True

    async def unsubscribe_all(self, session_id: str) -> int:
        """Drop every filter of the session and detach its sink."""
        async with self._lock:
            self._sinks.pop(session_id, None)
            return len(self._subscriptions.pop(session_id, {}))

    async def publish(self, message: Message) -> int:
        """
        Deliver `message` to every session holding a matching filter, once
        per session. Returns how many sessions were written to; failed
        deliveries are logged and dropped.
        """
        validate_topic(message.topic)
        if message.qos not in (0, 1):
            raise ProtocolError(f"unsupported QoS {message.qos}")

        async with self._lock:
            if message.retain:
                self._store_retained(message)
            targets: List[Tuple[str, object, int]] = []
            for sid, filters in self._subscriptions.items():
                granted = [q for f, q in filters.items() if match_topic(f, message.topic)]
                if granted:
                    targets.append((sid, self._sinks.get(sid), min(message.qos, max(granted))))

        if not targets:
            return 0

        # established subscriptions always see retain=0
        live = replace(message, retain=False) if message.retain else message
        results = await asyncio.gather(
            *(self._deliver(sid, sink, live, qos) for sid, sink, qos in targets)
        )
        return sum(results)

    def subscriptions(self, session_id: str) -> Dict[str, int]:
        return dict(self._subscriptions.get(session_id, {}))

    def retained(self, topic: str) -> Optional[Message]:
        return self._retained.get(topic)

    def _store_retained(self, message: Message) -> None:
        # an empty retained payload clears the topic
        if not message.payload:
            self._retained.pop(message.topic, None)
            return
        self._retained[message.topic] = message
        self._retained.move_to_end(message.topic)
        while len(self._retained) > self.max_retained:
            evicted, _ = self._retained.popitem(last=False)
            logger.debug(f"retained store full, evicted {evicted!r}")

    async def _deliver(self, session_id: str, sink, message: Message, qos: int) -> bool:
        try:
            if sink is None:
                raise DeliveryFailure("no transport attached")
            await asyncio.wait_for(sink.deliver(message, qos), self.write_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"dropped {message.topic!r} for session {session_id}: "
                           f"write timed out after {self.write_timeout}s")
        except (DeliveryFailure, TransportFailure, ConnectionError) as exc:
            logger.warning(f"dropped {message.topic!r} for session {session_id}: {exc}")
        return False
