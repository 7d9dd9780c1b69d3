# mqtt_ingest.py
import asyncio
import logging

import paho.mqtt.client as mqtt

from .errors import ParseError
from .telemetry import parse_telemetry_json

logger = logging.getLogger(__name__)


class MqttTelemetryClient:
    """Subscribes to one telemetry topic and feeds messages into the registry.

    paho runs its own network thread; each message is handed to the event
    loop with `run_coroutine_threadsafe`. Reconnects use paho's built-in
    exponential backoff between `reconnect_min_s` and `reconnect_max_s`.
    """

    def __init__(self, registry, loop, broker, topic, port=1883, username=None, password=None,
                 keepalive=30, reconnect_min_s=1, reconnect_max_s=30):
        self.registry = registry
        self.loop = loop
        self.broker = broker
        self.port = int(port)
        self.topic = topic
        self.username = username
        self.password = password
        self.keepalive = int(keepalive)
        self.reconnect_min_s = int(reconnect_min_s)
        self.reconnect_max_s = int(reconnect_max_s)
        self.client = None
        self.received = 0
        self.rejected = 0

    def start(self):
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        if self.username:
            client.username_pw_set(self.username, self.password)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.reconnect_delay_set(min_delay=self.reconnect_min_s, max_delay=self.reconnect_max_s)
        client.connect_async(self.broker, self.port, self.keepalive)
        client.loop_start()
        self.client = client
        logger.info(f"[MQTT] Connecting to {self.broker}:{self.port}, topic '{self.topic}'")

    def stop(self):
        if self.client is not None:
            self.client.disconnect()
            self.client.loop_stop()
            self.client = None
            logger.info("[MQTT] Stopped")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(f"[MQTT] Connection refused: {reason_code}")
            return
        client.subscribe(self.topic)
        logger.info(f"[MQTT] Connected, subscribed to '{self.topic}'")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        logger.warning(f"[MQTT] Disconnected ({reason_code}); will reconnect")

    def _on_message(self, client, userdata, msg):
        self.handle_payload(msg.payload)

    def handle_payload(self, raw):
        """Parse one message and schedule it on the loop. Returns the future or None."""
        self.received += 1
        try:
            payload = parse_telemetry_json(raw)
        except ParseError as e:
            self.rejected += 1
            logger.warning(f"[MQTT] Dropping malformed message: {e.message}")
            return None

        try:
            future = asyncio.run_coroutine_threadsafe(
                self.registry.update_entity(payload, source="mqtt"), self.loop
            )
        except RuntimeError as e:
            logger.warning(f"[MQTT] Event loop unavailable, dropping message: {e}")
            return None
        future.add_done_callback(self._report)
        return future

    def _report(self, future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"[MQTT] Update failed: {error}")
        elif not future.result():
            self.rejected += 1
