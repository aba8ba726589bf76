# device_bridge/config/settings.py
import os

HOST      = os.environ.get("HOST", "0.0.0.0")
PORT      = int(os.environ.get("PORT", 3000))        # HTTP gateway
WS_PORT   = int(os.environ.get("WS_PORT", 3001))     # MQTT over WebSocket
WS_PATH   = os.environ.get("WS_PATH", "/mqtt")
MQTT_PORT = int(os.environ.get("MQTT_PORT", 0))      # plain TCP listener, 0 = off

TOPIC_STATUS  = os.environ.get("TOPIC", "devices/status")
TOPIC_COMMAND = os.environ.get("TOPIC_COMMAND", "devices/command")

KEEPALIVE_TIMEOUT = float(os.environ.get("KEEPALIVE_TIMEOUT", 60))
WRITE_TIMEOUT     = float(os.environ.get("WRITE_TIMEOUT", 2))
PUBLISH_TIMEOUT   = float(os.environ.get("PUBLISH_TIMEOUT", 5))

MAX_RETAINED     = int(os.environ.get("MAX_RETAINED", 1024))
MAX_PACKET_SIZE  = int(os.environ.get("MAX_PACKET_SIZE", 256 * 1024))
MAX_QUEUED_BYTES = int(os.environ.get("MAX_QUEUED_BYTES", 1024 * 1024))  # per subscriber
EVENT_HISTORY    = int(os.environ.get("EVENT_HISTORY", 50))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
