"""Inbound message audit log for operators."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from connectivity import to_utc
from database import get_db
from models import InboundMessage, ParseStatus

router = APIRouter(prefix="/messages", tags=["messages"])


def _message_dict(message: InboundMessage, include_readings: bool = False) -> dict:
    data = {
        "id": message.id,
        "tenant_id": message.tenant_id,
        "device_id": message.device_id,
        "inventory_id": message.inventory_id,
        "source": message.source.value,
        "wire_format": message.wire_format,
        "raw_text": message.raw_text,
        "metric_code": message.metric_code,
        "parsed_payload": message.parsed_payload,
        "assignment_pending": bool(message.assignment_pending),
        "parse_status": message.parse_status.value,
        "parse_error": message.parse_error,
        "received_at": to_utc(message.received_at).isoformat() if message.received_at else None,
    }
    if include_readings:
        data["readings"] = [
            {"id": r.id, "variable": r.variable_code, "value": r.value}
            for r in sorted(message.readings, key=lambda r: r.id)
        ]
    return data


@router.get("")
def list_messages(
    status: Optional[ParseStatus] = Query(None),
    device_id: Optional[int] = Query(None),
    assignment_pending: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Newest first. Failed messages carry the parse or resolution error."""
    query = db.query(InboundMessage)
    if status:
        query = query.filter(InboundMessage.parse_status == status)
    if device_id:
        query = query.filter(InboundMessage.device_id == device_id)
    if assignment_pending is not None:
        query = query.filter(InboundMessage.assignment_pending == assignment_pending)
    messages = query.order_by(InboundMessage.id.desc()).offset(offset).limit(limit).all()
    return {"count": len(messages), "messages": [_message_dict(m) for m in messages]}


@router.get("/{message_id}")
def get_message(message_id: int, db: Session = Depends(get_db)):
    message = db.get(InboundMessage, message_id)
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    return _message_dict(message, include_readings=True)
