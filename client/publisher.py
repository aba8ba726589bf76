# device_bridge/client/publisher.py

import asyncio
import argparse

from client.connection import MQTTWebSocketClient, default_url


class Publisher:
    def __init__(self,
                 client_id: str,
                 topic: str,
                 message: str,
                 qos: int = 0,
                 retain: bool = False,
                 url: str = None,
                 lwt_topic: str = None,
                 lwt_payload: str = None):
        self.client_id = client_id
        self.topic     = topic
        self.message   = message
        self.qos       = qos
        self.retain    = retain
        self.url       = url or default_url()
        self.lwt       = None
        if lwt_topic and lwt_payload is not None:
            self.lwt = (lwt_topic, lwt_payload.encode())

    def _make_client(self) -> MQTTWebSocketClient:
        will_topic, will_payload = self.lwt if self.lwt else (None, b"")
        return MQTTWebSocketClient(self.client_id,
                                   url=self.url,
                                   will_topic=will_topic,
                                   will_payload=will_payload)

    async def run(self):
        client = self._make_client()
        await client.connect()
        print("✅ Connected, publishing…")

        pid = await client.publish(self.topic, self.message.encode(),
                                   qos=self.qos, retain=self.retain)
        if pid is not None:
            print(f"✅ PUBACK received for {pid}")

        await client.disconnect()
        print("🔌 Disconnected")


def main():
    p = argparse.ArgumentParser(description="MQTT-over-WebSocket publisher")
    p.add_argument("--client-id",   required=True)
    p.add_argument("--topic",       required=True)
    p.add_argument("--message",     required=True)
    p.add_argument("--url",         default=default_url(),
                   help="Broker WebSocket URL, e.g. ws://localhost:3001/mqtt")
    p.add_argument("--qos",         type=int, choices=[0, 1], default=0,
                   help="Quality of Service level (0 or 1)")
    p.add_argument("--retain",      action="store_true", help="Set retained flag")
    p.add_argument("--lwt-topic",   help="Last Will topic")
    p.add_argument("--lwt-payload", help="Last Will payload")
    args = p.parse_args()

    publisher = Publisher(
        client_id=args.client_id,
        topic=args.topic,
        message=args.message,
        qos=args.qos,
        retain=args.retain,
        url=args.url,
        lwt_topic=args.lwt_topic,
        lwt_payload=args.lwt_payload
    )
    asyncio.run(publisher.run())


if __name__ == "__main__":
    main()
