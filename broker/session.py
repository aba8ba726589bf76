# device_bridge/broker/session.py

import asyncio
import itertools
import uuid
from enum import Enum
from typing import Dict, Optional

import config.settings as settings
from common.errors import DeliveryFailure, ProtocolError, TransportFailure

from .events import EventBus, EventKind
from .protocol import (
    CONNACK_ACCEPTED,
    CONNACK_BAD_CLIENT_ID,
    CONNACK_BAD_PROTOCOL,
    SUBACK_FAILURE,
    SUPPORTED_PROTOCOLS,
    Connect,
    PacketType,
    Publish,
    Subscribe,
    Unsubscribe,
    encode_connack,
    encode_pingresp,
    encode_puback,
    encode_publish,
    encode_suback,
    encode_unsuback,
    read_packet,
)
from .router import Message, TopicRouter, validate_filter, validate_topic


class SessionState(Enum):
    AWAITING_CONNECT = "awaiting_connect"
    CONNECTED        = "connected"
    CLOSED           = "closed"


# client → server packets accepted once connected (QoS 2 flow is not supported)
_CONNECTED_PACKETS = frozenset({
    PacketType.SUBSCRIBE,
    PacketType.UNSUBSCRIBE,
    PacketType.PUBLISH,
    PacketType.PUBACK,
    PacketType.PINGREQ,
})


def next_state(state: SessionState, packet_type: PacketType) -> SessionState:
    """
    Transition for one inbound packet. Raises ProtocolError when the packet
    is not legal in `state`.
    """
    if state == SessionState.AWAITING_CONNECT:
        if packet_type == PacketType.CONNECT:
            return SessionState.CONNECTED
    elif state == SessionState.CONNECTED:
        if packet_type in _CONNECTED_PACKETS:
            return SessionState.CONNECTED
        if packet_type == PacketType.DISCONNECT:
            return SessionState.CLOSED
    raise ProtocolError(f"{packet_type.name} not allowed in state {state.name}")


class Session:
    def __init__(self,
                 session_id: str,
                 writer,
                 client_id: Optional[str] = None,
                 will: Optional[Message] = None,
                 max_queued: Optional[int] = None):
        self.session_id = session_id
        self.writer = writer
        self.client_id = client_id
        # published on our behalf if the connection ends without DISCONNECT
        self.will = will
        self.state = SessionState.AWAITING_CONNECT
        self.next_msg_id = 1    # for outbound QoS1 to this subscriber
        self.close_reason = ""
        # bytes the transport may hold for a peer that is not reading
        self.max_queued = settings.MAX_QUEUED_BYTES if max_queued is None else max_queued

    @property
    def connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    @property
    def queued(self) -> int:
        transport = self.writer.transport
        return transport.get_write_buffer_size() if transport is not None else 0

    def advance(self, packet_type: PacketType) -> None:
        self.state = next_state(self.state, packet_type)

    def next_id(self) -> int:
        pid = self.next_msg_id
        self.next_msg_id = pid + 1 if pid < 0xFFFF else 1
        return pid

    async def send(self, data: bytes) -> None:
        if self.writer.is_closing():
            raise TransportFailure("transport is closing")
        self.writer.write(data)
        await self.writer.drain()

    async def deliver(self, message: Message, qos: int) -> None:
        """
        Router sink: write one PUBLISH to this client. Nothing is written
        while the transport already holds `max_queued` bytes for it.
        """
        if not self.connected:
            raise DeliveryFailure(f"session {self.session_id} is {self.state.value}")
        if self.queued >= self.max_queued:
            raise DeliveryFailure(f"peer not reading, {self.queued} bytes queued")
        pid = self.next_id() if qos else None
        await self.send(encode_publish(message.topic, message.payload,
                                       qos=qos, retain=message.retain,
                                       packet_id=pid))


class SessionManager:
    """
    Runs the per-connection protocol: CONNECT, then SUBSCRIBE / UNSUBSCRIBE /
    PUBLISH / PINGREQ until DISCONNECT, transport loss, a protocol violation
    or the idle timeout. Lifecycle changes go to `events`.
    """
    def __init__(self,
                 router: TopicRouter,
                 events: Optional[EventBus] = None,
                 keepalive_timeout: Optional[float] = None,
                 max_packet_size: Optional[int] = None,
                 max_queued_bytes: Optional[int] = None):
        self.router = router
        self.events = events if events is not None else EventBus()
        self.keepalive_timeout = (settings.KEEPALIVE_TIMEOUT
                                  if keepalive_timeout is None else keepalive_timeout)
        self.max_packet_size = (settings.MAX_PACKET_SIZE
                                if max_packet_size is None else max_packet_size)
        self.max_queued_bytes = (settings.MAX_QUEUED_BYTES
                                 if max_queued_bytes is None else max_queued_bytes)

        # session_id -> Session, connected sessions only
        self.sessions: Dict[str, Session] = {}
        # client_id -> Session
        self._by_client: Dict[str, Session] = {}
        self._ids = itertools.count(1)

    def get(self, client_id: str) -> Optional[Session]:
        return self._by_client.get(client_id)

    async def handle_client(self, reader: asyncio.StreamReader, writer) -> None:
        sess = Session(f"s{next(self._ids)}", writer, max_queued=self.max_queued_bytes)
        try:
            await self._run(sess, reader)
        except ProtocolError as exc:
            sess.close_reason = f"protocol error: {exc}"
        except asyncio.TimeoutError:
            sess.close_reason = "keep-alive timeout"
        except (asyncio.IncompleteReadError, ConnectionError, TransportFailure):
            sess.close_reason = sess.close_reason or "connection lost"
        finally:
            await self.terminate_session(sess)

    async def _run(self, sess: Session, reader: asyncio.StreamReader) -> None:
        timeout = self.keepalive_timeout
        while sess.state != SessionState.CLOSED:
            pkt = await asyncio.wait_for(read_packet(reader, self.max_packet_size), timeout)
            sess.advance(pkt.packet_type)

            # ─── CONNECT ────────────────────────────────────────────────
            if pkt.packet_type == PacketType.CONNECT:
                await self._on_connect(sess, pkt)
                if pkt.keepalive:
                    timeout = max(self.keepalive_timeout, pkt.keepalive * 1.5)

            # ─── SUBSCRIBE / UNSUBSCRIBE ────────────────────────────────
            elif pkt.packet_type == PacketType.SUBSCRIBE:
                await self._on_subscribe(sess, pkt)
            elif pkt.packet_type == PacketType.UNSUBSCRIBE:
                await self._on_unsubscribe(sess, pkt)

            # ─── PUBLISH ────────────────────────────────────────────────
            elif pkt.packet_type == PacketType.PUBLISH:
                await self._on_publish(sess, pkt)

            elif pkt.packet_type == PacketType.PINGREQ:
                await sess.send(encode_pingresp())

            # ─── DISCONNECT ─────────────────────────────────────────────
            elif pkt.packet_type == PacketType.DISCONNECT:
                sess.will = None
                sess.close_reason = "client disconnect"

            # PUBACK from a subscriber: nothing is retried, nothing to track

    async def _on_connect(self, sess: Session, pkt: Connect) -> None:
        if SUPPORTED_PROTOCOLS.get(pkt.protocol_name) != pkt.protocol_level:
            await sess.send(encode_connack(CONNACK_BAD_PROTOCOL))
            sess.state = SessionState.CLOSED
            sess.close_reason = f"unsupported protocol level {pkt.protocol_level}"
            return

        client_id = pkt.client_id
        if not client_id:
            if not pkt.clean_session:
                await sess.send(encode_connack(CONNACK_BAD_CLIENT_ID))
                sess.state = SessionState.CLOSED
                sess.close_reason = "empty client id without clean session"
                return
            client_id = f"auto-{uuid.uuid4().hex[:12]}"

        will = None
        if pkt.will_topic is not None:
            validate_topic(pkt.will_topic)
            will = Message(topic=pkt.will_topic,
                           payload=pkt.will_payload,
                           qos=min(pkt.will_qos, 1),
                           retain=pkt.will_retain)

        previous = self._by_client.get(client_id)
        if previous is not None:
            # the older connection's own task tears it down once its reader ends
            previous.close_reason = "session taken over"
            previous.writer.close()

        sess.client_id = client_id
        sess.will = will
        self.sessions[sess.session_id] = sess
        self._by_client[client_id] = sess
        await self.router.attach(sess.session_id, sess)
        await sess.send(encode_connack(CONNACK_ACCEPTED))
        self.events.emit(EventKind.CONNECTED, sess.session_id, client_id)

    async def _on_subscribe(self, sess: Session, pkt: Subscribe) -> None:
        codes = []
        accepted = []
        for filt, qos in pkt.topics:
            try:
                validate_filter(filt)
            except ProtocolError:
                codes.append(SUBACK_FAILURE)
                continue
            granted = min(qos, 1)
            codes.append(granted)
            accepted.append((filt, granted))

        # SUBACK goes out before any retained message for these filters
        await sess.send(encode_suback(pkt.packet_id, codes))

        for filt, granted in accepted:
            await self.router.subscribe(sess.session_id, filt, granted)
        if accepted:
            self.events.emit(EventKind.SUBSCRIBED, sess.session_id, sess.client_id,
                             topics=[f for f, _ in accepted])

    async def _on_unsubscribe(self, sess: Session, pkt: Unsubscribe) -> None:
        for filt in pkt.topics:
            await self.router.unsubscribe(sess.session_id, filt)
        await sess.send(encode_unsuback(pkt.packet_id))
        self.events.emit(EventKind.UNSUBSCRIBED, sess.session_id, sess.client_id,
                         topics=pkt.topics)

    async def _on_publish(self, sess: Session, pkt: Publish) -> None:
        if pkt.qos == 2:
            raise ProtocolError("QoS 2 is not supported")
        validate_topic(pkt.topic)

        await self.router.publish(Message(topic=pkt.topic,
                                          payload=pkt.payload,
                                          qos=pkt.qos,
                                          retain=pkt.retain))
        if pkt.qos == 1:
            await sess.send(encode_puback(pkt.packet_id))
        self.events.emit(EventKind.PUBLISHED, sess.session_id, sess.client_id,
                         topics=[pkt.topic])

    async def terminate_session(self, sess: Session) -> None:
        """
        Tear a session down: drop its subscriptions, publish its will if it
        did not say goodbye, close the transport and report the disconnect.
        """
        was_connected = self.sessions.pop(sess.session_id, None) is not None
        if sess.client_id is not None and self._by_client.get(sess.client_id) is sess:
            del self._by_client[sess.client_id]
        sess.state = SessionState.CLOSED

        await self.router.unsubscribe_all(sess.session_id)

        will, sess.will = sess.will, None
        if was_connected and will is not None:
            await self.router.publish(will)
            self.events.emit(EventKind.PUBLISHED, sess.session_id, sess.client_id,
                             topics=[will.topic], detail="will")

        await _close(sess.writer)
        if was_connected:
            self.events.emit(EventKind.DISCONNECTED, sess.session_id, sess.client_id,
                             detail=sess.close_reason or "closed")


async def _close(writer) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        # the peer is already gone
        pass
