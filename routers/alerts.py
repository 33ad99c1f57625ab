"""Alert and alert rule management API endpoints."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from alert_engine import InvalidTransition, alert_engine
from database import get_db
from models import Alert, AlertRule, AlertSeverity, AlertStatus, DeviceType, RuleOperator, Tenant
from notification_dispatcher import notification_dispatcher

router = APIRouter(prefix="/alerts", tags=["alerts"])

RANGE_OPERATORS = (RuleOperator.BETWEEN, RuleOperator.OUTSIDE)


class AlertRuleCreate(BaseModel):
    rule_name: str = Field(..., min_length=2)
    device_type_id: int
    variable_code: str = Field(..., min_length=1, max_length=32)
    operator: RuleOperator
    threshold1: float
    threshold2: Optional[float] = None
    severity: AlertSeverity = AlertSeverity.WARNING
    message_template: Optional[str] = None
    tenant_id: Optional[int] = None
    is_active: bool = True


class AlertRuleUpdate(BaseModel):
    rule_name: Optional[str] = None
    operator: Optional[RuleOperator] = None
    threshold1: Optional[float] = None
    threshold2: Optional[float] = None
    severity: Optional[AlertSeverity] = None
    message_template: Optional[str] = None
    is_active: Optional[bool] = None


class AlertRuleResponse(BaseModel):
    id: int
    tenant_id: Optional[int]
    device_type_id: int
    variable_code: str
    rule_name: str
    operator: RuleOperator
    threshold1: float
    threshold2: Optional[float]
    severity: AlertSeverity
    message_template: Optional[str]
    is_active: bool

    class Config:
        from_attributes = True


class AlertResponse(BaseModel):
    id: int
    rule_id: Optional[int]
    device_id: int
    tenant_id: int
    variable_code: str
    value: float
    last_value: Optional[float]
    severity: AlertSeverity
    status: AlertStatus
    source: str
    title: str
    message: Optional[str]
    occurrence_count: int
    escalated: bool
    created_at: Optional[datetime]
    notified_at: Optional[datetime]
    acknowledged_at: Optional[datetime]
    resolved_at: Optional[datetime]
    closed_at: Optional[datetime]

    class Config:
        from_attributes = True


class AlertStatusUpdate(BaseModel):
    status: AlertStatus


# Columns an update may change but never clear
NON_NULLABLE_RULE_FIELDS = ("rule_name", "operator", "threshold1", "severity", "is_active")


def _check_thresholds(operator: RuleOperator, threshold1: float, threshold2: Optional[float]):
    if operator in RANGE_OPERATORS:
        if threshold2 is None:
            raise HTTPException(status_code=400, detail=f"Operator {operator.value} requires threshold2")
        if threshold2 < threshold1:
            raise HTTPException(status_code=400, detail="threshold2 must not be lower than threshold1")


# Alert Rules Management
@router.get("/rules", response_model=List[AlertRuleResponse])
def list_alert_rules(
    device_type_id: Optional[int] = Query(None),
    tenant_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    """List alert rules, newest first."""
    query = db.query(AlertRule)
    if device_type_id:
        query = query.filter(AlertRule.device_type_id == device_type_id)
    if tenant_id:
        query = query.filter(AlertRule.tenant_id == tenant_id)
    return query.order_by(AlertRule.id.desc()).all()


@router.post("/rules", response_model=AlertRuleResponse, status_code=status.HTTP_201_CREATED)
def create_alert_rule(rule_data: AlertRuleCreate, db: Session = Depends(get_db)):
    """Create a threshold rule. Without tenant_id it is a platform default."""
    if not db.get(DeviceType, rule_data.device_type_id):
        raise HTTPException(status_code=404, detail="Device type not found")
    if rule_data.tenant_id is not None and not db.get(Tenant, rule_data.tenant_id):
        raise HTTPException(status_code=404, detail="Tenant not found")
    _check_thresholds(rule_data.operator, rule_data.threshold1, rule_data.threshold2)

    values = rule_data.model_dump()
    values["variable_code"] = values["variable_code"].strip().upper()
    if not values["message_template"]:
        values["message_template"] = f"Alert: {values['variable_code']} triggered {rule_data.rule_name}"
    rule = AlertRule(**values)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


@router.put("/rules/{rule_id}", response_model=AlertRuleResponse)
def update_alert_rule(rule_id: int, rule_data: AlertRuleUpdate, db: Session = Depends(get_db)):
    rule = db.get(AlertRule, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Alert rule not found")

    updates = rule_data.model_dump(exclude_unset=True)
    cleared = [key for key in NON_NULLABLE_RULE_FIELDS if key in updates and updates[key] is None]
    if cleared:
        raise HTTPException(status_code=400, detail=f"{', '.join(cleared)} cannot be null")

    for key, value in updates.items():
        setattr(rule, key, value)
    _check_thresholds(rule.operator, rule.threshold1, rule.threshold2)

    db.commit()
    db.refresh(rule)
    return rule


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_alert_rule(rule_id: int, db: Session = Depends(get_db)):
    """Delete a rule. Its alerts stay, with rule_id cleared."""
    rule = db.get(AlertRule, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    db.query(Alert).filter(Alert.rule_id == rule_id).update({Alert.rule_id: None}, synchronize_session=False)
    db.delete(rule)
    db.commit()


# Alert Management
@router.get("", response_model=List[AlertResponse])
def list_alerts(
    device_id: Optional[int] = Query(None),
    tenant_id: Optional[int] = Query(None),
    status: Optional[AlertStatus] = Query(None),
    severity: Optional[AlertSeverity] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    query = db.query(Alert)
    if device_id:
        query = query.filter(Alert.device_id == device_id)
    if tenant_id:
        query = query.filter(Alert.tenant_id == tenant_id)
    if status:
        query = query.filter(Alert.status == status)
    if severity:
        query = query.filter(Alert.severity == severity)
    return query.order_by(Alert.created_at.desc(), Alert.id.desc()).offset(offset).limit(limit).all()


@router.post("/dispatch")
def dispatch_notifications():
    """Run a notification cycle now instead of waiting for the timer."""
    return notification_dispatcher.dispatch_pending().to_dict()


@router.get("/{alert_id}", response_model=AlertResponse)
def get_alert(alert_id: int, db: Session = Depends(get_db)):
    alert = db.get(Alert, alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert


@router.patch("/{alert_id}", response_model=AlertResponse)
def update_alert_status(alert_id: int, body: AlertStatusUpdate, db: Session = Depends(get_db)):
    """Acknowledge, resolve or close an alert."""
    alert = db.get(Alert, alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    try:
        alert_engine.transition_status(db, alert, body.status)
    except InvalidTransition as e:
        raise HTTPException(status_code=400, detail=str(e))
    db.commit()
    db.refresh(alert)
    return alert
