import json
import os
from types import SimpleNamespace

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ALERT_EVALUATION_MODE"] = "inline"
os.environ["MQTT_ENABLED"] = "false"
os.environ.pop("OPERATOR_API_KEY", None)
os.environ.pop("CRON_SECRET", None)
os.environ.pop("SMTP_HOST", None)

import pytest
from fastapi.testclient import TestClient

from database import Base, SessionLocal, engine
from identity_resolver import IdentityHints
from ingestion_pipeline import IngestionPipeline
from models import (
    AlertRule, AlertSeverity, Device, DeviceInventory, DeviceStatus, DeviceType,
    MessageSource, RuleOperator, Tenant
)
from notification_service import NotificationSender, SendResult
from parsers.wire_formats import WireFormat
from rate_limiter import rate_limiter


@pytest.fixture(autouse=True)
def database():
    Base.metadata.create_all(bind=engine)
    rate_limiter.reset()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seed():
    """One tenant with an active water monitor WAT-001, a spare unit WAT-002 and a W <= 20 rule."""
    with SessionLocal() as db:
        tenant = Tenant(
            name="Acme Water",
            tenant_code="acme",
            email="ops@acme.test",
            phone="+1 555 0100",
            notification_channels=["email"],
        )
        other = Tenant(name="Other Co", tenant_code="other", email="ops@other.test")
        water = DeviceType(name="Water Level Monitor", type_code="WAT", communication_protocol="http")
        db.add_all([tenant, other, water])
        db.flush()

        inventory = DeviceInventory(serial_number="WAT-001", legacy_device_id="1001", device_type_id=water.id)
        spare = DeviceInventory(serial_number="WAT-002", legacy_device_id="1002", device_type_id=water.id)
        db.add_all([inventory, spare])
        db.flush()

        device = Device(tenant_id=tenant.id, inventory_id=inventory.id, nickname="Tank A", status=DeviceStatus.ACTIVE)
        db.add(device)
        db.flush()

        rule = AlertRule(
            tenant_id=None,
            device_type_id=water.id,
            variable_code="W",
            rule_name="Low water",
            operator=RuleOperator.LTE,
            threshold1=20,
            severity=AlertSeverity.WARNING,
            message_template="Water level low: {value}",
        )
        db.add(rule)
        db.commit()

        return SimpleNamespace(
            tenant_id=tenant.id,
            other_tenant_id=other.id,
            device_type_id=water.id,
            inventory_id=inventory.id,
            spare_inventory_id=spare.id,
            device_id=device.id,
            rule_id=rule.id,
        )


@pytest.fixture
def client():
    from main import app

    return TestClient(app)


@pytest.fixture
def pipeline():
    return IngestionPipeline(alert_hook=None)


@pytest.fixture
def ingest(pipeline):
    """Ingest a structured payload for a serial number."""

    def _ingest(data, serial="WAT-001", received_at=None, target=None):
        target = target or pipeline
        return target.ingest(
            data,
            WireFormat.STRUCTURED,
            MessageSource.HTTP,
            IdentityHints(serial_number=serial),
            raw_text=json.dumps(data),
            received_at=received_at,
        )

    return _ingest


class RecordingSender(NotificationSender):
    """Sender that records notifications instead of delivering them."""

    def __init__(self, channel="email", succeed=True, recipient_attr="email"):
        super().__init__(sleep=lambda seconds: None)
        self.channel = channel
        self.succeed = succeed
        self.recipient_attr = recipient_attr
        self.sent = []

    def recipient_for(self, tenant):
        return getattr(tenant, self.recipient_attr)

    def _send(self, notification):
        self.sent.append(notification)
        if self.succeed:
            return SendResult(True, "test")
        return SendResult(False, "test", error="gateway rejected message")


@pytest.fixture
def recording_sender():
    return RecordingSender
