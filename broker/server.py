# device_bridge/broker/server.py

import asyncio
import logging
import threading
from typing import Optional

import config.settings as settings

from .events import EventBus, log_event
from .router import TopicRouter
from .session import SessionManager
from .transport import WebSocketBridge


class BrokerServer:
    """An asyncio MQTT broker served over WebSocket, optionally over plain TCP too."""
    def __init__(self,
                 host: Optional[str] = None,
                 ws_port: Optional[int] = None,
                 ws_path: Optional[str] = None,
                 mqtt_port: Optional[int] = None,
                 router: Optional[TopicRouter] = None,
                 events: Optional[EventBus] = None):
        self.host      = settings.HOST if host is None else host
        self.ws_port   = settings.WS_PORT if ws_port is None else ws_port
        self.mqtt_port = settings.MQTT_PORT if mqtt_port is None else mqtt_port

        # 1) Lifecycle side channel
        self.events = events if events is not None else EventBus()

        # 2) Router (subscriptions, retained messages, delivery)
        self.router = router if router is not None else TopicRouter()

        # 3) Session manager (per-connection protocol state)
        self.sessions = SessionManager(self.router, self.events)

        # 4) WebSocket upgrade path feeding the session manager
        self.bridge = WebSocketBridge(self.sessions.handle_client, path=ws_path)

        self._tcp_server: Optional[asyncio.AbstractServer] = None
        self._thread: Optional[threading.Thread] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    async def handle_client(self,
                            reader: asyncio.StreamReader,
                            writer: asyncio.StreamWriter):
        peer = writer.get_extra_info("peername")
        logging.info(f"🔌 New TCP connection from {peer}")
        await self.sessions.handle_client(reader, writer)

    async def start(self):
        await self.bridge.start(self.host, self.ws_port)
        logging.info(f"🚀 MQTT over WebSocket on {self.host}:{self.bridge.port}{self.bridge.path}")

        if self.mqtt_port:
            self._tcp_server = await asyncio.start_server(
                self.handle_client, self.host, self.mqtt_port
            )
            addr = self._tcp_server.sockets[0].getsockname()
            logging.info(f"🚀 MQTT over TCP on {addr}")

    async def stop(self):
        await self.bridge.stop()
        if self._tcp_server is not None:
            self._tcp_server.close()
            await self._tcp_server.wait_closed()
            self._tcp_server = None

    async def serve_forever(self):
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    @property
    def tcp_port(self) -> Optional[int]:
        if self._tcp_server is None:
            return None
        return self._tcp_server.sockets[0].getsockname()[1]

    def start_in_thread(self, timeout: float = 10.0) -> asyncio.AbstractEventLoop:
        """
        Run the broker on its own event loop in a daemon thread, so a
        threaded HTTP server can live in the main thread. Returns the loop.
        """
        loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=loop.run_forever,
                                        name="broker-loop",
                                        daemon=True)
        self._thread.start()
        asyncio.run_coroutine_threadsafe(self.start(), loop).result(timeout)
        self.loop = loop
        return loop

    def stop_thread(self, timeout: float = 10.0) -> None:
        if self.loop is None:
            return
        asyncio.run_coroutine_threadsafe(self.stop(), self.loop).result(timeout)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
        self.loop.close()
        self.loop = None


def main():
    logging.basicConfig(level=settings.LOG_LEVEL,
                        format="%(asctime)s %(levelname)s %(message)s")
    broker = BrokerServer()
    broker.events.add_listener(log_event)
    try:
        asyncio.run(broker.serve_forever())
    except KeyboardInterrupt:
        logging.info("🛑 Broker shutting down")


if __name__ == '__main__':
    main()
