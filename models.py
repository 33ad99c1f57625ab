"""Database models for devices, inbound messages, telemetry and alerting."""
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text, ForeignKey, JSON, Float, Enum, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum


class DeviceStatus(str, enum.Enum):
    """Operational status of a tenant device (managed outside ingestion)."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    RETIRED = "retired"


class MessageSource(str, enum.Enum):
    """Transport a message arrived on."""
    SMS = "sms"
    HTTP = "http"
    MQTT = "mqtt"
    IMPORT = "import"


class ParseStatus(str, enum.Enum):
    PENDING = "pending"
    PARSED = "parsed"
    FAILED = "failed"


class RuleOperator(str, enum.Enum):
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NEQ = "neq"
    GTE = "gte"
    GT = "gt"
    BETWEEN = "between"
    OUTSIDE = "outside"


class AlertSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(str, enum.Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Tenant(Base):
    """Customer organization owning devices."""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False, index=True)
    tenant_code = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    # Channels used for consolidated alert notifications: ["email", "sms", "webhook"]
    notification_channels = Column(JSON, nullable=False, default=lambda: ["email"])
    webhook_url = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    devices = relationship("Device", back_populates="tenant")


class DeviceType(Base):
    """Device model definition (water level monitor, power meter, ...)."""
    __tablename__ = "device_types"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    type_code = Column(String(50), unique=True, nullable=False, index=True)
    communication_protocol = Column(String(20), nullable=False, default="http")  # http, sms, mqtt
    manufacturer = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    inventory = relationship("DeviceInventory", back_populates="device_type")


class DeviceInventory(Base):
    """Physical unit in the device catalogue, identified by serial or legacy ID."""
    __tablename__ = "device_inventory"

    id = Column(Integer, primary_key=True, index=True)
    serial_number = Column(String(100), unique=True, nullable=False, index=True)
    legacy_device_id = Column(String(100), unique=True, nullable=True, index=True)
    device_type_id = Column(Integer, ForeignKey("device_types.id"), nullable=False)
    sim_number = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    device_type = relationship("DeviceType", back_populates="inventory")
    assignments = relationship("Device", back_populates="inventory")


class Device(Base):
    """Assignment of an inventory unit to a tenant."""
    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True, index=True)
    inventory_id = Column(Integer, ForeignKey("device_inventory.id"), nullable=False, index=True)
    nickname = Column(String(200), nullable=True)
    status = Column(Enum(DeviceStatus), nullable=False, default=DeviceStatus.ACTIVE, index=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)
    # Extra channels for this device's alerts, merged with the tenant's
    notification_channels = Column(JSON, nullable=True)
    installed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    tenant = relationship("Tenant", back_populates="devices")
    inventory = relationship("DeviceInventory", back_populates="assignments")

    @property
    def display_name(self) -> str:
        if self.nickname:
            return self.nickname
        if self.inventory is not None:
            return self.inventory.serial_number
        return f"DEV-{self.id}"


class InboundMessage(Base):
    """Audit record of one ingestion attempt. Never deleted."""
    __tablename__ = "inbound_messages"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=True, index=True)
    inventory_id = Column(Integer, ForeignKey("device_inventory.id"), nullable=True, index=True)
    source = Column(Enum(MessageSource), nullable=False, default=MessageSource.HTTP)
    wire_format = Column(String(20), nullable=True)
    raw_text = Column(Text, nullable=False)
    metric_code = Column(String(50), nullable=True)  # legacy "hum" parameter
    parsed_payload = Column(JSON, nullable=True)
    assignment_pending = Column(Boolean, default=False)
    parse_status = Column(Enum(ParseStatus), nullable=False, default=ParseStatus.PENDING, index=True)
    parse_error = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)

    readings = relationship("TelemetryReading", back_populates="message")


class TelemetryReading(Base):
    """One normalized (variable, value, time) observation."""
    __tablename__ = "telemetry_readings"
    __table_args__ = (
        Index("ix_telemetry_device_variable_time", "device_id", "variable_code", "captured_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False)
    message_id = Column(Integer, ForeignKey("inbound_messages.id"), nullable=False, index=True)
    variable_code = Column(String(32), nullable=False)
    value = Column(Float, nullable=False)
    captured_at = Column(DateTime(timezone=True), nullable=False)

    message = relationship("InboundMessage", back_populates="readings")


class AlertRule(Base):
    """Static threshold rule. Tenant NULL means platform default."""
    __tablename__ = "alert_rules"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True, index=True)
    device_type_id = Column(Integer, ForeignKey("device_types.id"), nullable=False, index=True)
    variable_code = Column(String(32), nullable=False, index=True)
    rule_name = Column(String(200), nullable=False)
    operator = Column(Enum(RuleOperator), nullable=False)
    threshold1 = Column(Float, nullable=False)
    threshold2 = Column(Float, nullable=True)
    severity = Column(Enum(AlertSeverity), nullable=False, default=AlertSeverity.WARNING)
    message_template = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Alert(Base):
    """Alert instance created by the alert engine."""
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False, index=True)
    rule_id = Column(Integer, ForeignKey("alert_rules.id", ondelete="SET NULL"), nullable=True, index=True)
    variable_code = Column(String(32), nullable=False)
    value = Column(Float, nullable=False)
    severity = Column(Enum(AlertSeverity), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    message = Column(Text, nullable=True)
    status = Column(Enum(AlertStatus), nullable=False, default=AlertStatus.OPEN, index=True)
    source = Column(String(20), nullable=False, default="threshold")  # threshold, anomaly, manual

    # "{device}:{variable}:{rule|anomaly|manual}" while open, NULL afterwards.
    # The unique constraint is the guard against duplicate open alerts.
    dedup_key = Column(String(200), unique=True, nullable=True)
    occurrence_count = Column(Integer, nullable=False, default=1)
    last_value = Column(Float, nullable=True)
    escalated = Column(Boolean, default=False)
    escalated_at = Column(DateTime(timezone=True), nullable=True)

    notified_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    device = relationship("Device")
    tenant = relationship("Tenant")


class NotificationLog(Base):
    """One dispatch attempt (recipient, channel, subject, status)."""
    __tablename__ = "notification_logs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True, index=True)
    alert_ids = Column(JSON, nullable=True)
    channel = Column(String(50), nullable=False, index=True)  # email, sms, webhook
    recipient = Column(String(500), nullable=False)
    subject = Column(String(500), nullable=True)
    message = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, index=True)  # sent, failed, queued
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AnomalyObservation(Base):
    """Anomaly detector result kept for audit and health scoring."""
    __tablename__ = "anomaly_observations"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False, index=True)
    reading_id = Column(Integer, ForeignKey("telemetry_readings.id"), nullable=True)
    variable_code = Column(String(32), nullable=False)
    value = Column(Float, nullable=False)
    score = Column(Integer, nullable=False)
    anomaly_type = Column(String(20), nullable=False)
    message = Column(Text, nullable=True)
    observed_at = Column(DateTime(timezone=True), nullable=False, index=True)
