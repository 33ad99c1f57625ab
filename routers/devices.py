"""Operator endpoints for device diagnostics, health and readings."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session, joinedload

from alert_engine import alert_engine
from connectivity import classify, to_utc
from database import get_db
from health_monitoring_service import health_monitoring_service
from models import Device, DeviceInventory, InboundMessage, NotificationLog, TelemetryReading
from mqtt_command_service import mqtt_command_service

logger = logging.getLogger(__name__)

router = APIRouter()

SUPPORTED_ACTIONS = {
    "mqtt": ["send_ping", "request_status", "restart_device", "update_config"],
    "sms": ["send_sms_ping", "request_status_sms"],
    "http": ["wait_for_next_checkin"],
}


class PingAction(BaseModel):
    action: str
    notes: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return to_utc(value).isoformat() if value is not None else None


def _get_device(db: Session, device_id: int) -> Device:
    device = db.query(Device).options(
        joinedload(Device.inventory).joinedload(DeviceInventory.device_type),
        joinedload(Device.tenant),
    ).filter(Device.id == device_id).first()
    if not device:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
    return device


def _protocol(device: Device) -> str:
    device_type = device.inventory.device_type if device.inventory else None
    return (device_type.communication_protocol if device_type else None) or "http"


def _reading_dict(reading: TelemetryReading) -> Dict[str, Any]:
    return {
        "id": reading.id,
        "variable": reading.variable_code,
        "value": reading.value,
        "captured_at": _iso(reading.captured_at),
        "message_id": reading.message_id,
    }


@router.get("/{device_id}/ping")
def get_device_diagnostics(device_id: int, db: Session = Depends(get_db)):
    """Connectivity report, recent readings and the remote actions this device supports."""
    device = _get_device(db, device_id)
    report = classify(device.last_seen_at, datetime.now(timezone.utc), device.status)
    protocol = _protocol(device)

    recent = db.query(TelemetryReading).filter(
        TelemetryReading.device_id == device.id
    ).order_by(TelemetryReading.captured_at.desc(), TelemetryReading.id.desc()).limit(10).all()

    last_message = db.query(InboundMessage).filter(
        InboundMessage.device_id == device.id
    ).order_by(InboundMessage.received_at.desc(), InboundMessage.id.desc()).first()

    device_type = device.inventory.device_type if device.inventory else None
    return {
        "device": {
            "id": device.id,
            "serial_number": device.inventory.serial_number if device.inventory else None,
            "nickname": device.nickname,
            "status": device.status.value,
            "installed_at": _iso(device.installed_at),
        },
        "connectivity": {
            "last_seen_at": _iso(device.last_seen_at),
            **report.to_dict(),
        },
        "device_type": {
            "name": device_type.name,
            "type_code": device_type.type_code,
            "protocol": device_type.communication_protocol,
            "manufacturer": device_type.manufacturer,
        } if device_type else None,
        "tenant": {
            "id": device.tenant.id,
            "name": device.tenant.name,
            "email": device.tenant.email,
            "phone": device.tenant.phone,
        } if device.tenant else None,
        "recent_readings": [_reading_dict(r) for r in recent],
        "last_message": {
            "id": last_message.id,
            "source": last_message.source.value,
            "received_at": _iso(last_message.received_at),
            "parse_status": last_message.parse_status.value,
        } if last_message else None,
        "diagnostics": {
            "supported_actions": SUPPORTED_ACTIONS.get(protocol, SUPPORTED_ACTIONS["http"]),
            "can_send_command": protocol in ("mqtt", "sms"),
            "recommendation": report.recommendation,
        },
    }


@router.post("/{device_id}/ping")
def run_device_action(device_id: int, body: PingAction, db: Session = Depends(get_db)):
    """Queue an SMS ping, publish an MQTT command, or log a connectivity issue."""
    device = _get_device(db, device_id)
    protocol = _protocol(device)

    if body.action == "send_sms_ping":
        if protocol != "sms":
            raise HTTPException(status_code=400, detail="Device does not support SMS commands")
        db.add(NotificationLog(
            tenant_id=device.tenant_id,
            channel="sms",
            recipient=(device.inventory.sim_number if device.inventory else None) or "unknown",
            subject="Device Ping",
            message="STATUS?",
            status="queued",
        ))
        db.commit()
        return {"success": True, "message": "SMS ping command queued. Response will be logged when received."}

    if body.action in ("send_ping", "request_status"):
        if protocol != "mqtt":
            raise HTTPException(status_code=400, detail="Device does not support MQTT commands")
        published = mqtt_command_service.publish_command(device.inventory.serial_number, body.action)
        if not published:
            return {
                "success": False,
                "message": "Could not reach the MQTT broker. Device will report on next scheduled transmission.",
            }
        return {"success": True, "message": f"{body.action} command published."}

    if body.action == "log_issue":
        if device.tenant_id is None:
            raise HTTPException(status_code=400, detail="Device is not assigned to a tenant")
        alert = alert_engine.create_manual_alert(
            db,
            device,
            variable_code="CONNECTIVITY",
            title="Device Connectivity Issue Reported",
            message=body.notes or "Admin reported connectivity issue with this device.",
        )
        db.commit()
        return {"success": True, "message": "Issue logged successfully.", "alert_id": alert.id}

    raise HTTPException(status_code=400, detail=f"Unknown action: {body.action}")


@router.get("/{device_id}/connectivity")
def get_device_connectivity(device_id: int, db: Session = Depends(get_db)):
    device = _get_device(db, device_id)
    report = classify(device.last_seen_at, datetime.now(timezone.utc), device.status)
    return {"device_id": device.id, "last_seen_at": _iso(device.last_seen_at), **report.to_dict()}


@router.get("/{device_id}/health")
def get_device_health(device_id: int, db: Session = Depends(get_db)):
    """0-100 health score with the issues that lowered it."""
    device = _get_device(db, device_id)
    return health_monitoring_service.device_health(db, device)


@router.get("/{device_id}/readings")
def get_device_readings(
    device_id: int,
    variable: Optional[str] = Query(None, description="Variable code"),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    device = _get_device(db, device_id)
    query = db.query(TelemetryReading).filter(TelemetryReading.device_id == device.id)
    if variable:
        query = query.filter(TelemetryReading.variable_code == variable.upper())
    if start:
        query = query.filter(TelemetryReading.captured_at >= to_utc(start))
    if end:
        query = query.filter(TelemetryReading.captured_at <= to_utc(end))
    readings: List[TelemetryReading] = query.order_by(
        TelemetryReading.captured_at.desc(), TelemetryReading.id.desc()
    ).limit(limit).all()
    return {"device_id": device.id, "count": len(readings), "readings": [_reading_dict(r) for r in readings]}
