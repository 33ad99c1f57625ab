#!/usr/bin/env python3
"""
MQTT telemetry simulator.

Publishes JSON readings to devices/{serial}/telemetry, or inline
"VAR=VALUE" text when PAYLOAD_STYLE=inline.
"""

import json
import os
import random
import time
from datetime import datetime, timezone

import paho.mqtt.client as mqtt


# Configuration
SERIAL_NUMBER = os.environ.get("SERIAL_NUMBER", "VALVE-001")
MQTT_HOST = os.environ.get("MQTT_HOST", "mqtt-broker")
MQTT_PORT = int(os.environ.get("MQTT_PORT", "1883"))
MQTT_TOPIC = f"devices/{SERIAL_NUMBER}/telemetry"
MQTT_QOS = int(os.environ.get("MQTT_QOS", "1"))
PAYLOAD_STYLE = os.environ.get("PAYLOAD_STYLE", "json")  # "json" or "inline"
SEND_INTERVAL_SECONDS = int(os.environ.get("SEND_INTERVAL_SECONDS", "60"))


def build_readings() -> dict:
    return {
        "FLOW": round(random.uniform(2.0, 50.0), 2),
        "PRES": round(random.uniform(2.0, 5.0), 2),
        "BAT": random.randint(80, 100),
        "RSSI": random.randint(-95, -65),
    }


def encode(readings: dict) -> str:
    if PAYLOAD_STYLE == "inline":
        return ",".join(f"{code}={value}" for code, value in readings.items())
    return json.dumps({"data": readings})


def on_connect(client, userdata, flags, reason_code, properties):
    if reason_code == 0:
        print(f"[MQTT] Connected to {MQTT_HOST}:{MQTT_PORT}")
    else:
        print(f"[MQTT] Failed to connect, reason code={reason_code}")


def main():
    print(f"MQTT simulator starting for device: {SERIAL_NUMBER}")
    print(f"Broker: {MQTT_HOST}:{MQTT_PORT}")
    print(f"Topic:  {MQTT_TOPIC} ({PAYLOAD_STYLE})")
    print(f"Interval: {SEND_INTERVAL_SECONDS} seconds\n")

    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=f"sim-{SERIAL_NUMBER}")
    client.on_connect = on_connect

    client.connect(MQTT_HOST, MQTT_PORT, keepalive=60)
    client.loop_start()

    try:
        while True:
            readings = build_readings()
            result = client.publish(MQTT_TOPIC, encode(readings), qos=MQTT_QOS)

            now = datetime.now(timezone.utc).isoformat()
            if result.rc == mqtt.MQTT_ERR_SUCCESS:
                print(f"[{now}] Published {readings}")
            else:
                print(f"[{now}] FAILED to publish, rc={result.rc}")

            time.sleep(SEND_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        print("MQTT simulator interrupted, shutting down...")
    finally:
        client.loop_stop()
        client.disconnect()


if __name__ == "__main__":
    main()
