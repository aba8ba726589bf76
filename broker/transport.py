# device_bridge/broker/transport.py
#
# MQTT over WebSocket: binary frames in, byte stream out, and back again.

import asyncio
import logging
from http import HTTPStatus
from typing import Awaitable, Callable, Optional, Sequence
from urllib.parse import urlsplit

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

import config.settings as settings
from common.errors import TransportFailure

logger = logging.getLogger(__name__)

MQTT_SUBPROTOCOL = "mqtt"

StreamHandler = Callable[[asyncio.StreamReader, "WebSocketWriter"], Awaitable[None]]


class WebSocketWriter:
    """
    The writing half of a WebSocket seen as a byte stream. Mirrors the parts
    of asyncio.StreamWriter the broker uses; each drain() sends whatever was
    written since the previous one as a single binary frame.
    """
    def __init__(self, connection):
        self.connection = connection
        self._buffer = bytearray()
        self._closing = False
        self._close_task: Optional[asyncio.Task] = None

    def write(self, data: bytes) -> None:
        if self._closing:
            raise TransportFailure("write on a closing websocket")
        self._buffer.extend(data)

    async def drain(self) -> None:
        if not self._buffer:
            return
        data = bytes(self._buffer)
        self._buffer.clear()
        try:
            await self.connection.send(data)
        except ConnectionClosed as exc:
            self._closing = True
            raise TransportFailure(f"websocket closed: {exc}") from exc

    @property
    def transport(self) -> asyncio.Transport:
        # frames already sent but not yet flushed to the socket sit here
        return self.connection.transport

    def is_closing(self) -> bool:
        return self._closing or self.connection.state is not State.OPEN

    def close(self) -> None:
        if self._closing and self._close_task is not None:
            return
        self._closing = True
        self._close_task = asyncio.ensure_future(self.connection.close())

    async def wait_closed(self) -> None:
        if self._close_task is not None:
            await self._close_task
        await self.connection.wait_closed()

    def get_extra_info(self, name: str, default=None):
        if name == "peername":
            return self.connection.remote_address
        return default


async def pump_frames(connection, reader: asyncio.StreamReader) -> None:
    """Feed every binary frame into `reader`; EOF once the socket is gone."""
    try:
        async for frame in connection:
            if isinstance(frame, str):
                raise TransportFailure("text frames are not accepted")
            reader.feed_data(frame)
    except ConnectionClosed:
        pass
    except TransportFailure as exc:
        logger.warning(f"closing {connection.remote_address}: {exc}")
        await connection.close(1003, str(exc))
    finally:
        reader.feed_eof()


def select_subprotocol(connection, subprotocols: Sequence[str]):
    # clients that offer nothing are still served
    if MQTT_SUBPROTOCOL in subprotocols:
        return MQTT_SUBPROTOCOL
    return None


class WebSocketBridge:
    """
    Accepts WebSocket upgrades on exactly one path and hands each accepted
    connection to `on_stream(reader, writer)` as a duplex byte stream.
    """
    def __init__(self,
                 on_stream: StreamHandler,
                 path: Optional[str] = None,
                 max_frame_size: Optional[int] = None):
        self.on_stream = on_stream
        self.path = settings.WS_PATH if path is None else path
        self.max_frame_size = (settings.MAX_PACKET_SIZE + 5
                               if max_frame_size is None else max_frame_size)
        self._server: Optional[Server] = None

    def check_request(self, connection: ServerConnection, request):
        """
        Runs before the handshake. Returning a response refuses the upgrade.
        """
        path = urlsplit(request.path).path
        if path != self.path:
            logger.info(f"WS rejected (wrong path): {path}")
            return connection.respond(HTTPStatus.NOT_FOUND, "Unknown upgrade path.\n")

        if "websocket" not in request.headers.get("Upgrade", "").lower():
            response = connection.respond(
                HTTPStatus.UPGRADE_REQUIRED,
                "WebSocket MQTT endpoint. Use ws(s) and MQTT over websockets.\n",
            )
            response.headers["Upgrade"] = "websocket"
            return response
        return None

    async def handle(self, connection: ServerConnection) -> None:
        reader = asyncio.StreamReader()
        writer = WebSocketWriter(connection)
        pump = asyncio.create_task(pump_frames(connection, reader))
        try:
            await self.on_stream(reader, writer)
        finally:
            pump.cancel()
            await connection.close()

    async def start(self, host: str, port: int) -> Server:
        self._server = await serve(
            self.handle,
            host,
            port,
            process_request=self.check_request,
            select_subprotocol=select_subprotocol,
            max_size=self.max_frame_size,
        )
        return self._server

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return next(iter(self._server.sockets)).getsockname()[1]

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
