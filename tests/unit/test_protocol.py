import asyncio

import pytest

from broker.protocol import (
    Connect,
    Control,
    PacketType,
    Publish,
    Subscribe,
    Unsubscribe,
    encode_connack,
    encode_connect,
    encode_publish,
    encode_suback,
    read_packet,
)
from common.errors import ProtocolError


async def parse(data: bytes, **kwargs):
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return await read_packet(reader, **kwargs)


@pytest.mark.asyncio
async def test_connect_with_will_and_credentials():
    pkt = await parse(encode_connect("dev-1", keepalive=30,
                                     username="alice", password=b"pw",
                                     will_topic="devices/dev-1/state",
                                     will_payload=b"offline", will_qos=1,
                                     will_retain=True))
    assert isinstance(pkt, Connect)
    assert pkt.client_id == "dev-1"
    assert pkt.keepalive == 30
    assert pkt.clean_session is True
    assert (pkt.protocol_name, pkt.protocol_level) == ("MQTT", 4)
    assert pkt.username == "alice"
    assert pkt.password == b"pw"
    assert pkt.will_topic == "devices/dev-1/state"
    assert pkt.will_payload == b"offline"
    assert pkt.will_qos == 1
    assert pkt.will_retain is True


@pytest.mark.asyncio
async def test_subscribe_from_raw_bytes():
    # packet id 10, filters "a/+" qos 1 and "b/#" qos 0
    raw = bytes([0x82, 14, 0x00, 0x0A,
                 0x00, 0x03]) + b"a/+" + bytes([0x01, 0x00, 0x03]) + b"b/#" + bytes([0x00])
    pkt = await parse(raw)
    assert isinstance(pkt, Subscribe)
    assert pkt.packet_id == 10
    assert pkt.topics == [("a/+", 1), ("b/#", 0)]


@pytest.mark.asyncio
async def test_unsubscribe_and_disconnect():
    raw = bytes([0xA2, 5, 0x00, 0x02, 0x00, 0x01]) + b"x"
    pkt = await parse(raw)
    assert isinstance(pkt, Unsubscribe)
    assert pkt.topics == ["x"]

    pkt = await parse(bytes([0xE0, 0x00]))
    assert isinstance(pkt, Control)
    assert pkt.packet_type == PacketType.DISCONNECT


@pytest.mark.asyncio
async def test_publish_with_multi_byte_length():
    payload = b"x" * 300
    data = encode_publish("devices/status", payload, qos=1, retain=True, packet_id=7)
    # 2 + 14 + 2 + 300 = 318 -> two length bytes
    assert data[1:3] == bytes([318 % 128 | 0x80, 318 // 128])

    pkt = await parse(data)
    assert isinstance(pkt, Publish)
    assert pkt.topic == "devices/status"
    assert pkt.payload == payload
    assert (pkt.qos, pkt.retain, pkt.packet_id) == (1, True, 7)


def test_remaining_length_boundaries():
    assert encode_connack()[1] == 2
    assert len(encode_suback(1, [0] * 125)) == 2 + 127
    assert encode_suback(1, [0] * 126)[1:3] == bytes([0x80, 0x01])


@pytest.mark.parametrize("raw", [
    bytes([0x00, 0x00]),                               # reserved type 0
    bytes([0xF0, 0x00]),                               # reserved type 15
    bytes([0x80, 0x05, 0x00, 0x01, 0x00, 0x00, 0x00]), # SUBSCRIBE without 0b0010 flags
    bytes([0x36, 0x05, 0x00, 0x01]) + b"t" + bytes([0x00, 0x01]),  # PUBLISH qos 3
    bytes([0x30, 0x04, 0x00, 0x0A]) + b"ab",           # topic longer than body
    bytes([0xC0, 0x01, 0x00]),                         # PINGREQ with body
    bytes([0x82, 0x02, 0x00, 0x01]),                   # SUBSCRIBE without filters
    bytes([0x82, 0x06, 0x00, 0x01, 0x00, 0x01]) + b"a" + bytes([0x03]),  # requested qos 3
    bytes([0x32, 0x05, 0x00, 0x01]) + b"t" + bytes([0x00, 0x00]),  # packet id 0
])
@pytest.mark.asyncio
async def test_malformed_packets(raw):
    with pytest.raises(ProtocolError):
        await parse(raw)


@pytest.mark.asyncio
async def test_malformed_remaining_length():
    with pytest.raises(ProtocolError):
        await parse(bytes([0x30, 0xFF, 0xFF, 0xFF, 0xFF, 0x01]))


@pytest.mark.asyncio
async def test_unknown_protocol_name():
    data = bytearray(encode_connect("c"))
    data[4:8] = b"XQTT"
    with pytest.raises(ProtocolError):
        await parse(bytes(data))


@pytest.mark.asyncio
async def test_packet_over_limit():
    data = encode_publish("t", b"x" * 100)
    with pytest.raises(ProtocolError):
        await parse(data, max_size=50)


@pytest.mark.asyncio
async def test_stream_ending_mid_packet():
    with pytest.raises(asyncio.IncompleteReadError):
        await parse(encode_publish("devices/status", b"payload")[:5])
