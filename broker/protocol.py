# device_bridge/broker/protocol.py
#
# MQTT 3.1.1 control packets: decoding from an asyncio stream and encoding
# to bytes. Both directions are covered so the bundled clients can reuse it.

import asyncio
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import ClassVar, List, Optional, Tuple

from common.errors import ProtocolError


class PacketType(IntEnum):
    CONNECT     = 1
    CONNACK     = 2
    PUBLISH     = 3
    PUBACK      = 4
    PUBREC      = 5
    PUBREL      = 6
    PUBCOMP     = 7
    SUBSCRIBE   = 8
    SUBACK      = 9
    UNSUBSCRIBE = 10
    UNSUBACK    = 11
    PINGREQ     = 12
    PINGRESP    = 13
    DISCONNECT  = 14


# CONNACK return codes
CONNACK_ACCEPTED         = 0x00
CONNACK_BAD_PROTOCOL     = 0x01
CONNACK_BAD_CLIENT_ID    = 0x02

SUBACK_FAILURE = 0x80

MAX_REMAINING_LENGTH = 268_435_455
SUPPORTED_PROTOCOLS = {"MQTT": 4, "MQIsdp": 3}

# fixed-header flags mandated by the standard for packets that are not PUBLISH
_REQUIRED_FLAGS = {
    PacketType.PUBREL:      0x02,
    PacketType.SUBSCRIBE:   0x02,
    PacketType.UNSUBSCRIBE: 0x02,
}


# ─── Packet types ──────────────────────────────────────────────────────────

@dataclass
class Connect:
    packet_type: ClassVar[PacketType] = PacketType.CONNECT
    client_id: str
    keepalive: int = 0
    clean_session: bool = True
    protocol_name: str = "MQTT"
    protocol_level: int = 4
    username: Optional[str] = None
    password: Optional[bytes] = None
    will_topic: Optional[str] = None
    will_payload: bytes = b""
    will_qos: int = 0
    will_retain: bool = False


@dataclass
class Connack:
    packet_type: ClassVar[PacketType] = PacketType.CONNACK
    return_code: int
    session_present: bool = False


@dataclass
class Publish:
    packet_type: ClassVar[PacketType] = PacketType.PUBLISH
    topic: str
    payload: bytes = b""
    qos: int = 0
    retain: bool = False
    dup: bool = False
    packet_id: Optional[int] = None


@dataclass
class Subscribe:
    packet_type: ClassVar[PacketType] = PacketType.SUBSCRIBE
    packet_id: int
    topics: List[Tuple[str, int]] = field(default_factory=list)


@dataclass
class Suback:
    packet_type: ClassVar[PacketType] = PacketType.SUBACK
    packet_id: int
    return_codes: List[int] = field(default_factory=list)


@dataclass
class Unsubscribe:
    packet_type: ClassVar[PacketType] = PacketType.UNSUBSCRIBE
    packet_id: int
    topics: List[str] = field(default_factory=list)


@dataclass
class PacketId:
    """PUBACK, PUBREC, PUBREL, PUBCOMP and UNSUBACK: a packet id and nothing else."""
    type: PacketType
    packet_id: int

    @property
    def packet_type(self) -> PacketType:
        return self.type


@dataclass
class Control:
    """PINGREQ, PINGRESP and DISCONNECT carry no body."""
    type: PacketType

    @property
    def packet_type(self) -> PacketType:
        return self.type


# ─── Decoding ──────────────────────────────────────────────────────────────

class _Cursor:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def _take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise ProtocolError("truncated packet")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def u8(self) -> int:
        return self._take(1)[0]

    def u16(self) -> int:
        return struct.unpack("!H", self._take(2))[0]

    def binary(self) -> bytes:
        return self._take(self.u16())

    def string(self) -> str:
        raw = self.binary()
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise ProtocolError("invalid UTF-8 string") from None
        if "\x00" in text:
            raise ProtocolError("NUL character in string")
        return text

    def rest(self) -> bytes:
        chunk = self.data[self.pos:]
        self.pos = len(self.data)
        return chunk

    @property
    def at_end(self) -> bool:
        return self.pos >= len(self.data)


async def read_packet(reader: asyncio.StreamReader,
                      max_size: int = MAX_REMAINING_LENGTH):
    """
    Read exactly one control packet from `reader` and decode it.

    Raises asyncio.IncompleteReadError when the stream ends, and
    ProtocolError for anything malformed.
    """
    first = (await reader.readexactly(1))[0]

    length = 0
    multiplier = 1
    for _ in range(4):
        byte = (await reader.readexactly(1))[0]
        length += (byte & 0x7F) * multiplier
        if not byte & 0x80:
            break
        multiplier *= 128
    else:
        raise ProtocolError("malformed remaining length")

    if length > max_size:
        raise ProtocolError(f"packet of {length} bytes exceeds limit of {max_size}")

    body = await reader.readexactly(length) if length else b""
    return decode(first >> 4, first & 0x0F, body)


def decode(type_nibble: int, flags: int, body: bytes):
    try:
        ptype = PacketType(type_nibble)
    except ValueError:
        raise ProtocolError(f"reserved packet type {type_nibble}") from None

    if ptype != PacketType.PUBLISH and flags != _REQUIRED_FLAGS.get(ptype, 0):
        raise ProtocolError(f"invalid flags {flags:#x} for {ptype.name}")

    cur = _Cursor(body)

    if ptype == PacketType.CONNECT:
        pkt = _decode_connect(cur)
    elif ptype == PacketType.CONNACK:
        ack_flags = cur.u8()
        pkt = Connack(return_code=cur.u8(), session_present=bool(ack_flags & 0x01))
    elif ptype == PacketType.PUBLISH:
        pkt = _decode_publish(cur, flags)
    elif ptype == PacketType.SUBSCRIBE:
        pkt = _decode_subscribe(cur)
    elif ptype == PacketType.SUBACK:
        pid = cur.u16()
        pkt = Suback(packet_id=pid, return_codes=list(cur.rest()))
    elif ptype == PacketType.UNSUBSCRIBE:
        pid = cur.u16()
        topics = []
        while not cur.at_end:
            topics.append(cur.string())
        if not topics:
            raise ProtocolError("UNSUBSCRIBE without topic filters")
        pkt = Unsubscribe(packet_id=pid, topics=topics)
    elif ptype in (PacketType.PUBACK, PacketType.PUBREC, PacketType.PUBREL,
                   PacketType.PUBCOMP, PacketType.UNSUBACK):
        pkt = PacketId(type=ptype, packet_id=cur.u16())
    else:
        pkt = Control(type=ptype)

    if not cur.at_end:
        raise ProtocolError(f"trailing bytes in {ptype.name}")
    return pkt


def _decode_connect(cur: _Cursor) -> Connect:
    name = cur.string()
    if name not in SUPPORTED_PROTOCOLS:
        raise ProtocolError(f"unknown protocol name {name!r}")
    level = cur.u8()
    flags = cur.u8()
    if flags & 0x01:
        raise ProtocolError("reserved CONNECT flag set")
    keepalive = cur.u16()
    client_id = cur.string()

    pkt = Connect(client_id=client_id,
                  keepalive=keepalive,
                  clean_session=bool(flags & 0x02),
                  protocol_name=name,
                  protocol_level=level)

    if flags & 0x04:
        pkt.will_qos = (flags >> 3) & 0x03
        pkt.will_retain = bool(flags & 0x20)
        if pkt.will_qos == 3:
            raise ProtocolError("invalid will QoS")
        pkt.will_topic = cur.string()
        pkt.will_payload = cur.binary()
    elif flags & 0x38:
        raise ProtocolError("will QoS/retain set without will flag")

    if flags & 0x80:
        pkt.username = cur.string()
    if flags & 0x40:
        pkt.password = cur.binary()
    return pkt


def _decode_publish(cur: _Cursor, flags: int) -> Publish:
    qos = (flags >> 1) & 0x03
    if qos == 3:
        raise ProtocolError("PUBLISH with reserved QoS 3")
    topic = cur.string()
    pid = None
    if qos > 0:
        pid = cur.u16()
        if pid == 0:
            raise ProtocolError("packet id 0 is not allowed")
    return Publish(topic=topic,
                   payload=cur.rest(),
                   qos=qos,
                   retain=bool(flags & 0x01),
                   dup=bool(flags & 0x08),
                   packet_id=pid)


def _decode_subscribe(cur: _Cursor) -> Subscribe:
    pid = cur.u16()
    topics = []
    while not cur.at_end:
        filt = cur.string()
        qos = cur.u8()
        if qos > 2:
            raise ProtocolError(f"invalid requested QoS {qos}")
        topics.append((filt, qos))
    if not topics:
        raise ProtocolError("SUBSCRIBE without topic filters")
    return Subscribe(packet_id=pid, topics=topics)


# ─── Encoding ──────────────────────────────────────────────────────────────

def _encode_length(n: int) -> bytes:
    if n > MAX_REMAINING_LENGTH:
        raise ProtocolError("packet too large")
    out = bytearray()
    while True:
        byte = n % 128
        n //= 128
        if n:
            byte |= 0x80
        out.append(byte)
        if not n:
            return bytes(out)


def _pack(ptype: PacketType, flags: int, body: bytes = b"") -> bytes:
    return bytes([(ptype << 4) | flags]) + _encode_length(len(body)) + body


def _str(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("!H", len(raw)) + raw


def _bin(value: bytes) -> bytes:
    return struct.pack("!H", len(value)) + value


def encode_connack(return_code: int = CONNACK_ACCEPTED,
                   session_present: bool = False) -> bytes:
    return _pack(PacketType.CONNACK, 0, bytes([int(session_present), return_code]))


def encode_publish(topic: str,
                   payload: bytes,
                   qos: int = 0,
                   retain: bool = False,
                   packet_id: Optional[int] = None,
                   dup: bool = False) -> bytes:
    flags = (qos << 1) | int(retain) | (0x08 if dup else 0)
    body = _str(topic)
    if qos > 0:
        if not packet_id:
            raise ValueError("QoS > 0 requires a packet id")
        body += struct.pack("!H", packet_id)
    return _pack(PacketType.PUBLISH, flags, body + payload)


def encode_puback(packet_id: int) -> bytes:
    return _pack(PacketType.PUBACK, 0, struct.pack("!H", packet_id))


def encode_suback(packet_id: int, return_codes: List[int]) -> bytes:
    return _pack(PacketType.SUBACK, 0, struct.pack("!H", packet_id) + bytes(return_codes))


def encode_unsuback(packet_id: int) -> bytes:
    return _pack(PacketType.UNSUBACK, 0, struct.pack("!H", packet_id))


def encode_pingresp() -> bytes:
    return _pack(PacketType.PINGRESP, 0)


# client → server

def encode_connect(client_id: str,
                   keepalive: int = 60,
                   clean_session: bool = True,
                   username: Optional[str] = None,
                   password: Optional[bytes] = None,
                   will_topic: Optional[str] = None,
                   will_payload: bytes = b"",
                   will_qos: int = 0,
                   will_retain: bool = False) -> bytes:
    flags = 0x02 if clean_session else 0
    payload = _str(client_id)
    if will_topic is not None:
        flags |= 0x04 | (will_qos << 3) | (0x20 if will_retain else 0)
        payload += _str(will_topic) + _bin(will_payload)
    if username is not None:
        flags |= 0x80
        payload += _str(username)
    if password is not None:
        flags |= 0x40
        payload += _bin(password)
    header = _str("MQTT") + bytes([4, flags]) + struct.pack("!H", keepalive)
    return _pack(PacketType.CONNECT, 0, header + payload)


def encode_subscribe(packet_id: int, topics: List[Tuple[str, int]]) -> bytes:
    body = struct.pack("!H", packet_id)
    for filt, qos in topics:
        body += _str(filt) + bytes([qos])
    return _pack(PacketType.SUBSCRIBE, 0x02, body)


def encode_unsubscribe(packet_id: int, topics: List[str]) -> bytes:
    body = struct.pack("!H", packet_id)
    for filt in topics:
        body += _str(filt)
    return _pack(PacketType.UNSUBSCRIBE, 0x02, body)


def encode_pingreq() -> bytes:
    return _pack(PacketType.PINGREQ, 0)


def encode_disconnect() -> bytes:
    return _pack(PacketType.DISCONNECT, 0)
