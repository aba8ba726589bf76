# device_bridge/gateway/context.py

import asyncio
import concurrent.futures
import json
import time
from dataclasses import dataclass, field
from typing import Optional

import config.settings as settings
from broker.events import EventBus, EventKind
from broker.router import Message, TopicRouter
from broker.server import BrokerServer
from common.errors import BridgeError, DeliveryFailure
from registry.devices import DeviceRegistry


@dataclass
class AppContext:
    """
    Everything a request handler may touch. One instance per process; tests
    build as many independent ones as they like.

    `loop` is the event loop the router lives on; publishes from request
    threads are handed over to it.
    """
    registry: DeviceRegistry
    router: TopicRouter
    events: EventBus
    loop: asyncio.AbstractEventLoop
    status_topic: str = field(default_factory=lambda: settings.TOPIC_STATUS)
    command_topic: str = field(default_factory=lambda: settings.TOPIC_COMMAND)
    transport_path: str = field(default_factory=lambda: settings.WS_PATH)
    transport_port: int = field(default_factory=lambda: settings.WS_PORT)
    publish_timeout: float = field(default_factory=lambda: settings.PUBLISH_TIMEOUT)

    @classmethod
    def for_broker(cls,
                   broker: BrokerServer,
                   registry: Optional[DeviceRegistry] = None) -> "AppContext":
        if broker.loop is None:
            raise RuntimeError("broker is not running; call start_in_thread() first")
        return cls(registry=registry if registry is not None else DeviceRegistry(),
                   router=broker.router,
                   events=broker.events,
                   loop=broker.loop,
                   transport_path=broker.bridge.path,
                   transport_port=broker.bridge.port)

    def publish(self, topic: str, payload: dict) -> int:
        """
        Publish `payload` plus a server `ts` (epoch ms) as UTF-8 JSON, QoS 1,
        not retained. Blocks until the router has handed it to every matching
        session; returns how many were reached.
        """
        envelope = dict(payload)
        envelope["ts"] = int(time.time() * 1000)
        message = Message(topic=topic,
                          payload=json.dumps(envelope, ensure_ascii=False,
                                             separators=(",", ":")).encode("utf-8"),
                          qos=1,
                          retain=False)

        coro = self.router.publish(message)
        try:
            future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        except RuntimeError as exc:
            coro.close()
            raise DeliveryFailure(f"broker loop unavailable: {exc}") from exc

        try:
            delivered = future.result(self.publish_timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise DeliveryFailure(f"publish to {topic!r} timed out") from exc
        except BridgeError as exc:
            raise DeliveryFailure(f"publish to {topic!r} failed: {exc}") from exc

        self.events.emit(EventKind.PUBLISHED, topics=[topic],
                         detail=f"{delivered} deliveries")
        return delivered
