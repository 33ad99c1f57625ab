#!/usr/bin/env python3
"""
Water level monitor HTTP telemetry simulator.

Sends W (level %) and WP (pump pressure) readings either as a query-string
sweep (?serial=WAT-001&W=..&WP=..) or in the legacy gateway form
(?temp=W:../WP:..&hum=..&DID=..), one message per interval.
"""

import os
import random
import time
from datetime import datetime, timezone

import requests


# Configuration
API_BASE_URL = os.environ.get("API_BASE_URL", "http://localhost:5000")
INGEST_PATH = os.environ.get("INGEST_PATH", "/api/ingest")
SERIAL_NUMBER = os.environ.get("SERIAL_NUMBER", "WAT-001")
TENANT_CODE = os.environ.get("TENANT_CODE", "demo")
MODE = os.environ.get("MODE", "query")  # "query" or "legacy"
SEND_INTERVAL_SECONDS = int(os.environ.get("SEND_INTERVAL_SECONDS", "60"))

level_percent = float(os.environ.get("START_LEVEL", "80"))


def build_readings() -> dict:
    """Tank slowly drains and is refilled when it drops below 10%."""
    global level_percent

    level_percent -= random.uniform(0.5, 3.0)
    if level_percent < 10:
        level_percent = random.uniform(85, 100)

    pump_running = level_percent < 30
    pressure = round(random.uniform(2.5, 4.0), 2) if pump_running else round(random.uniform(0.0, 0.3), 2)
    return {"W": round(level_percent, 1), "WP": pressure}


def send_query(readings: dict) -> requests.Response:
    params = {"serial": SERIAL_NUMBER, **readings}
    return requests.get(f"{API_BASE_URL}{INGEST_PATH}", params=params, timeout=10)


def send_legacy(readings: dict) -> requests.Response:
    temp = "/".join(f"{code}:{value}" for code, value in readings.items())
    params = {"temp": temp, "hum": "LVL", "CID": TENANT_CODE, "DID": SERIAL_NUMBER}
    return requests.get(f"{API_BASE_URL}{INGEST_PATH}/legacy", params=params, timeout=10)


def main():
    print(f"Water level simulator starting for device: {SERIAL_NUMBER}")
    print(f"Endpoint: {API_BASE_URL}{INGEST_PATH} ({MODE} mode)")
    print(f"Interval: {SEND_INTERVAL_SECONDS} seconds\n")

    send = send_legacy if MODE == "legacy" else send_query

    try:
        while True:
            readings = build_readings()
            now = datetime.now(timezone.utc).isoformat()
            try:
                response = send(readings)
                if response.status_code == 200:
                    print(f"[{now}] Sent W={readings['W']} WP={readings['WP']}")
                else:
                    print(f"[{now}] FAILED ({response.status_code}): {response.text[:200]}")
            except requests.RequestException as e:
                print(f"[{now}] Request error: {e}")

            time.sleep(SEND_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        print("Water level simulator interrupted, shutting down...")


if __name__ == "__main__":
    main()
