"""Publishes diagnostic commands to MQTT-capable devices."""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt

from config import settings

logger = logging.getLogger(__name__)


class MQTTCommandService:
    """Publishes to ``devices/{serial}/commands``. Connects on first use."""

    def __init__(self):
        self.client: Optional[mqtt.Client] = None
        self.is_connected = False

    def _connect(self):
        try:
            if self.client is None:
                self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id="telemetry-command-service")
                if settings.mqtt_broker_username and settings.mqtt_broker_password:
                    self.client.username_pw_set(settings.mqtt_broker_username, settings.mqtt_broker_password)
            self.client.connect(settings.mqtt_broker_host, settings.mqtt_broker_port, keepalive=60)
            self.client.loop_start()
            self.is_connected = True
            logger.info(f"MQTT command service connected to {settings.mqtt_broker_host}:{settings.mqtt_broker_port}")
        except Exception as e:
            logger.error(f"Failed to connect MQTT command service: {e}")
            self.is_connected = False

    def publish_command(self, serial_number: str, command: str, params: Optional[Dict[str, Any]] = None, qos: int = 1) -> bool:
        """Publish ``command`` to one device. Returns False when the broker is unreachable."""
        if not self.is_connected:
            self._connect()
            if not self.is_connected:
                return False

        topic = f"devices/{serial_number}/commands"
        payload = json.dumps({
            "command": command,
            "params": params or {},
            "issued_at": datetime.now(timezone.utc).isoformat(),
        })
        try:
            result = self.client.publish(topic, payload, qos=qos)
            if result.rc == mqtt.MQTT_ERR_SUCCESS:
                logger.info(f"Published {command} to {topic}")
                return True
            logger.error(f"Failed to publish command to {topic}: {result.rc}")
            return False
        except Exception as e:
            logger.error(f"Error publishing command to {topic}: {e}", exc_info=True)
            return False

    def disconnect(self):
        if self.client is not None and self.is_connected:
            self.client.loop_stop()
            self.client.disconnect()
            self.is_connected = False
            logger.info("MQTT command service disconnected")


# Global instance
mqtt_command_service = MQTTCommandService()
