# device_bridge/client/subscriber.py

import asyncio
import argparse
from typing import List, Optional

from broker.protocol import Publish
from client.connection import MQTTWebSocketClient, default_url


class Subscriber:
    def __init__(self,
                 client_id: str,
                 topic: str,
                 qos: int = 0,
                 url: str = None,
                 limit: Optional[int] = None):
        self.client_id = client_id
        self.topic     = topic
        self.qos       = qos
        self.url       = url or default_url()
        # stop after this many messages; None listens until cancelled
        self.limit     = limit
        self.received: List[Publish] = []
        self.ready     = asyncio.Event()

    async def run(self):
        client = MQTTWebSocketClient(self.client_id, url=self.url)
        await client.connect()
        print("✅ Connected, subscribing…")

        granted = await client.subscribe(self.topic, self.qos)
        if granted == 0x80:
            print("❌ SUBSCRIBE failed")
            await client.close()
            return

        print(f"👂 Listening on '{self.topic}' (QoS {granted})…")
        self.ready.set()

        try:
            while self.limit is None or len(self.received) < self.limit:
                pkt = await client.next_message()
                self.received.append(pkt)
                flag = " (retained)" if pkt.retain else ""
                print(f"🔔 {pkt.topic} → {pkt.payload!r}{flag} [qos={pkt.qos}, id={pkt.packet_id}]")
            await client.disconnect()
        except asyncio.CancelledError:
            await client.close()
            raise
        except asyncio.IncompleteReadError:
            print("🔌 Broker closed the connection")
            await client.close()


def main():
    p = argparse.ArgumentParser(description="MQTT-over-WebSocket subscriber")
    p.add_argument("--client-id", required=True)
    p.add_argument("--topic",     required=True)
    p.add_argument("--url",       default=default_url(),
                   help="Broker WebSocket URL, e.g. ws://localhost:3001/mqtt")
    p.add_argument("--qos",       type=int, choices=[0, 1], default=0,
                   help="Requested QoS level (0 or 1)")
    p.add_argument("--count",     type=int, default=None,
                   help="Exit after this many messages")
    args = p.parse_args()

    sub = Subscriber(
        client_id=args.client_id,
        topic=args.topic,
        qos=args.qos,
        url=args.url,
        limit=args.count
    )
    try:
        asyncio.run(sub.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
