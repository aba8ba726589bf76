# device_bridge/client/connection.py

import asyncio
from collections import deque
from typing import Optional

from websockets.asyncio.client import connect

import config.settings as settings
from broker.protocol import (
    CONNACK_ACCEPTED,
    Connack,
    PacketId,
    PacketType,
    Publish,
    Suback,
    encode_connect,
    encode_disconnect,
    encode_pingreq,
    encode_puback,
    encode_publish,
    encode_subscribe,
    encode_unsubscribe,
    read_packet,
)
from broker.transport import MQTT_SUBPROTOCOL, WebSocketWriter, pump_frames
from common.errors import ProtocolError, TransportFailure


def default_url() -> str:
    return f"ws://localhost:{settings.WS_PORT}{settings.WS_PATH}"


class MQTTWebSocketClient:
    """
    Minimal MQTT 3.1.1 client over WebSocket, enough for the bundled
    publisher/subscriber and for tests. QoS 0 and 1 only.
    """
    def __init__(self,
                 client_id: str,
                 url: Optional[str] = None,
                 keepalive: int = 60,
                 will_topic: Optional[str] = None,
                 will_payload: bytes = b"",
                 will_retain: bool = False):
        self.client_id = client_id
        self.url = url or default_url()
        self.keepalive = keepalive
        self.will_topic = will_topic
        self.will_payload = will_payload
        self.will_retain = will_retain

        self.connection = None
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[WebSocketWriter] = None
        self._pump: Optional[asyncio.Task] = None
        # PUBLISH packets that arrived while waiting for an acknowledgement
        self._inbox = deque()
        self._next_id = 1

    def _get_packet_id(self) -> int:
        pid = self._next_id
        self._next_id = pid + 1 if pid < 0xFFFF else 1
        return pid

    async def connect(self) -> None:
        self.connection = await connect(self.url, subprotocols=[MQTT_SUBPROTOCOL])
        self.reader = asyncio.StreamReader()
        self.writer = WebSocketWriter(self.connection)
        self._pump = asyncio.create_task(pump_frames(self.connection, self.reader))

        await self.send(encode_connect(self.client_id,
                                       keepalive=self.keepalive,
                                       will_topic=self.will_topic,
                                       will_payload=self.will_payload,
                                       will_retain=self.will_retain))
        ack = await self.read()
        if not isinstance(ack, Connack) or ack.return_code != CONNACK_ACCEPTED:
            await self.close()
            raise TransportFailure(f"connection refused: {ack!r}")

    async def send(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def read(self, timeout: Optional[float] = None):
        return await asyncio.wait_for(read_packet(self.reader), timeout)

    async def _expect(self, packet_type: PacketType, packet_id: int, timeout: Optional[float]):
        while True:
            pkt = await self.read(timeout)
            if isinstance(pkt, Publish):
                await self._ack(pkt)
                self._inbox.append(pkt)
                continue
            if pkt.packet_type == packet_type and getattr(pkt, "packet_id", None) == packet_id:
                return pkt
            raise ProtocolError(f"expected {packet_type.name} {packet_id}, got {pkt!r}")

    async def _ack(self, pkt: Publish) -> None:
        if pkt.qos == 1:
            await self.send(encode_puback(pkt.packet_id))

    async def subscribe(self, topic: str, qos: int = 0, timeout: Optional[float] = None) -> int:
        """Subscribe to one filter; returns the granted QoS (0x80 on refusal)."""
        pid = self._get_packet_id()
        await self.send(encode_subscribe(pid, [(topic, qos)]))
        ack: Suback = await self._expect(PacketType.SUBACK, pid, timeout)
        return ack.return_codes[0]

    async def unsubscribe(self, topic: str, timeout: Optional[float] = None) -> None:
        pid = self._get_packet_id()
        await self.send(encode_unsubscribe(pid, [topic]))
        await self._expect(PacketType.UNSUBACK, pid, timeout)

    async def publish(self,
                      topic: str,
                      payload: bytes,
                      qos: int = 0,
                      retain: bool = False,
                      timeout: Optional[float] = None) -> Optional[int]:
        pid = self._get_packet_id() if qos else None
        await self.send(encode_publish(topic, payload, qos=qos, retain=retain, packet_id=pid))
        if qos == 1:
            ack: PacketId = await self._expect(PacketType.PUBACK, pid, timeout)
            return ack.packet_id
        return None

    async def ping(self, timeout: Optional[float] = None) -> None:
        await self.send(encode_pingreq())
        while True:
            pkt = await self.read(timeout)
            if isinstance(pkt, Publish):
                await self._ack(pkt)
                self._inbox.append(pkt)
            elif pkt.packet_type == PacketType.PINGRESP:
                return

    async def next_message(self, timeout: Optional[float] = None) -> Publish:
        if self._inbox:
            return self._inbox.popleft()
        while True:
            pkt = await self.read(timeout)
            if isinstance(pkt, Publish):
                await self._ack(pkt)
                return pkt

    async def disconnect(self) -> None:
        try:
            await self.send(encode_disconnect())
        finally:
            await self.close()

    async def close(self) -> None:
        if self.connection is None:
            return
        await self.connection.close()
        if self._pump is not None:
            await self._pump
        self.connection = None
