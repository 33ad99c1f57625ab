"""MQTT subscriber feeding device telemetry into the ingestion pipeline."""
import json
import logging
from typing import Optional

import paho.mqtt.client as mqtt

from config import settings
from error_handler import IngestError
from identity_resolver import IdentityHints
from ingestion_pipeline import IngestionPipeline, IngestResult, ingestion_pipeline
from metrics import metrics
from models import MessageSource
from parsers.wire_formats import WireFormat
from rate_limiter import RateLimiter, rate_limiter

logger = logging.getLogger(__name__)


def serial_from_topic(topic: str) -> Optional[str]:
    """``devices/{serial}/telemetry`` -> serial."""
    parts = topic.split("/")
    if len(parts) != 3 or parts[0] != "devices" or parts[2] != "telemetry" or not parts[1]:
        return None
    return parts[1]


class MQTTTelemetryHandler:
    """Subscribes to device telemetry topics. The client is created on connect."""

    def __init__(self, pipeline: IngestionPipeline = ingestion_pipeline, limiter: RateLimiter = rate_limiter):
        self.pipeline = pipeline
        self.limiter = limiter
        self.client: Optional[mqtt.Client] = None
        self.is_connected = False

    def handle_message(self, topic: str, raw: bytes) -> Optional[IngestResult]:
        """Ingest one MQTT message. JSON objects are structured, anything else key=value text."""
        serial = serial_from_topic(topic)
        if serial is None:
            logger.warning(f"Invalid MQTT topic format: {topic}")
            metrics.record_message_failed("invalid_topic")
            return None

        is_allowed, reason = self.limiter.is_allowed(serial)
        if not is_allowed:
            metrics.record_rate_limit_hit(serial)
            logger.warning(f"Dropping MQTT message from {serial}: {reason}")
            return None

        text = raw.decode("utf-8", errors="replace")
        payload = None
        try:
            decoded = json.loads(text)
            if isinstance(decoded, dict):
                payload = decoded.get("data") if isinstance(decoded.get("data"), dict) else decoded
        except ValueError:
            pass

        if payload is not None:
            wire_format, body = WireFormat.STRUCTURED, payload
        else:
            wire_format, body = WireFormat.INLINE_KV, text

        try:
            return self.pipeline.ingest(
                body,
                wire_format,
                MessageSource.MQTT,
                IdentityHints(serial_number=serial),
                raw_text=text,
            )
        except IngestError as e:
            logger.warning(f"MQTT message from {serial} rejected: {e.message}")
            return None

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code == 0:
            self.is_connected = True
            logger.info(f"Connected to MQTT broker at {settings.mqtt_broker_host}:{settings.mqtt_broker_port}")
            client.subscribe(settings.mqtt_telemetry_topic, qos=1)
            logger.info(f"Subscribed to MQTT topic: {settings.mqtt_telemetry_topic}")
        else:
            logger.error(f"Failed to connect to MQTT broker. Reason code: {reason_code}")
            self.is_connected = False

    def _on_message(self, client, userdata, msg):
        try:
            self.handle_message(msg.topic, msg.payload)
        except Exception as e:
            logger.error(f"Error processing MQTT message on {msg.topic}: {e}", exc_info=True)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self.is_connected = False
        if reason_code != 0:
            logger.warning(f"Unexpected MQTT disconnection. Reason code: {reason_code}")
        else:
            logger.info("Disconnected from MQTT broker")

    def connect(self):
        """Connect to the broker and start the network loop."""
        if self.client is None:
            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id="telemetry-ingest")
            if settings.mqtt_broker_username and settings.mqtt_broker_password:
                self.client.username_pw_set(settings.mqtt_broker_username, settings.mqtt_broker_password)
            self.client.on_connect = self._on_connect
            self.client.on_message = self._on_message
            self.client.on_disconnect = self._on_disconnect

        logger.info(f"Connecting to MQTT broker at {settings.mqtt_broker_host}:{settings.mqtt_broker_port}")
        self.client.connect(settings.mqtt_broker_host, settings.mqtt_broker_port, keepalive=60)
        self.client.loop_start()

    def disconnect(self):
        if self.client is not None:
            self.client.loop_stop()
            self.client.disconnect()
            self.is_connected = False
            logger.info("Disconnected from MQTT broker")


# Global MQTT handler instance
mqtt_handler = MQTTTelemetryHandler()
