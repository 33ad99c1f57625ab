"""Alert engine: threshold rules and anomaly detection over new readings."""
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from anomaly_detection import anomaly_severity, detect_anomaly
from config import settings
from database import SessionLocal
from metrics import metrics
from models import (
    Alert, AlertRule, AlertSeverity, AlertStatus, AnomalyObservation,
    Device, InboundMessage, RuleOperator, TelemetryReading
)

logger = logging.getLogger(__name__)

SEVERITY_LADDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.CRITICAL]

ALLOWED_TRANSITIONS = {
    AlertStatus.OPEN: {AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED, AlertStatus.CLOSED},
    AlertStatus.ACKNOWLEDGED: {AlertStatus.RESOLVED, AlertStatus.CLOSED},
    AlertStatus.RESOLVED: {AlertStatus.CLOSED},
    AlertStatus.CLOSED: set(),
}


class InvalidTransition(ValueError):
    pass


def evaluate_operator(operator: RuleOperator, value: float, threshold1: float, threshold2: Optional[float] = None) -> bool:
    """Evaluate a rule operator. Range operators without a second threshold never match."""
    operator = RuleOperator(operator)
    if operator == RuleOperator.LT:
        return value < threshold1
    if operator == RuleOperator.LTE:
        return value <= threshold1
    if operator == RuleOperator.GT:
        return value > threshold1
    if operator == RuleOperator.GTE:
        return value >= threshold1
    if operator == RuleOperator.EQ:
        return value == threshold1
    if operator == RuleOperator.NEQ:
        return value != threshold1
    if threshold2 is None:
        logger.warning(f"Operator {operator.value} needs a second threshold")
        return False
    if operator == RuleOperator.BETWEEN:
        return threshold1 <= value <= threshold2
    if operator == RuleOperator.OUTSIDE:
        return value < threshold1 or value > threshold2
    return False


def render_message(template: Optional[str], value: float, default: str) -> str:
    """Substitute ``{value}`` in a rule's message template."""
    if not template:
        return default
    return template.replace("{value}", f"{value:g}")


def dedup_key(device_id: int, variable_code: str, suffix) -> str:
    return f"{device_id}:{variable_code}:{suffix}"


class AlertEngine:
    """Evaluates the readings of one inbound message against alert rules.

    At most one alert per (device, variable, rule) can be open at a time; the
    unique ``dedup_key`` column enforces it. Further matches while an alert is
    open are counted on that alert and escalate its severity every
    ``escalation_occurrences`` matches.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        escalation_occurrences: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.escalation_occurrences = escalation_occurrences or settings.alert_escalation_occurrences

    def _get_rules(
        self, db: Session, tenant_id: int, device_type_id: int, variable_codes: Iterable[str]
    ) -> Dict[str, List[AlertRule]]:
        """Active rules for this tenant and platform defaults, keyed by variable code."""
        rules = db.query(AlertRule).filter(
            AlertRule.is_active == True,
            AlertRule.device_type_id == device_type_id,
            AlertRule.variable_code.in_(list(variable_codes)),
            or_(AlertRule.tenant_id == tenant_id, AlertRule.tenant_id.is_(None)),
        ).order_by(AlertRule.id).all()

        by_variable: Dict[str, List[AlertRule]] = {}
        for rule in rules:
            by_variable.setdefault(rule.variable_code, []).append(rule)
        return by_variable

    def process_message(self, message_id: int) -> List[Alert]:
        """Evaluate every reading of a parsed message. Returns newly created alerts."""
        db = self.session_factory()
        try:
            message = db.get(InboundMessage, message_id)
            if message is None or message.device_id is None:
                return []

            device = db.get(Device, message.device_id)
            if device is None or device.inventory is None:
                logger.warning(f"Message {message_id} references a missing device")
                return []
            if device.tenant_id is None:
                logger.warning(f"Device {device.id} was unassigned before message {message_id} was evaluated")
                return []

            readings = db.query(TelemetryReading).filter(
                TelemetryReading.message_id == message_id
            ).order_by(TelemetryReading.id).all()
            if not readings:
                return []

            rules_by_variable = self._get_rules(
                db, message.tenant_id, device.inventory.device_type_id,
                {reading.variable_code for reading in readings},
            )

            created = []
            for reading in readings:
                rules = rules_by_variable.get(reading.variable_code, [])
                # Variables covered by a threshold rule skip anomaly detection
                if rules:
                    created.extend(self._evaluate_rules(db, device, reading, rules))
                else:
                    alert = self._evaluate_anomaly(db, device, reading)
                    if alert is not None:
                        created.append(alert)

            db.commit()
            for alert in created:
                logger.info(
                    f"Created alert: id={alert.id}, device_id={alert.device_id}, "
                    f"variable={alert.variable_code}, severity={alert.severity.value}, source={alert.source}"
                )
            return created
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _evaluate_rules(
        self, db: Session, device: Device, reading: TelemetryReading, rules: List[AlertRule]
    ) -> List[Alert]:
        created = []
        for rule in rules:
            if not evaluate_operator(rule.operator, reading.value, rule.threshold1, rule.threshold2):
                continue
            alert, is_new = self._raise_alert(
                db,
                device=device,
                variable_code=reading.variable_code,
                value=reading.value,
                severity=rule.severity,
                title=f"{rule.rule_name}: {reading.variable_code} = {reading.value:g}",
                message=render_message(
                    rule.message_template,
                    reading.value,
                    f"Alert: {reading.variable_code} triggered {rule.rule_name}",
                ),
                source="threshold",
                rule_id=rule.id,
                key_suffix=rule.id,
            )
            if is_new:
                created.append(alert)
        return created

    def _evaluate_anomaly(self, db: Session, device: Device, reading: TelemetryReading) -> Optional[Alert]:
        rows = db.query(TelemetryReading.value).filter(
            TelemetryReading.device_id == device.id,
            TelemetryReading.variable_code == reading.variable_code,
            TelemetryReading.id < reading.id,
        ).order_by(TelemetryReading.id.desc()).limit(settings.anomaly_window_size).all()
        history = [row.value for row in reversed(rows)]

        result = detect_anomaly(reading.value, history, threshold=settings.anomaly_z_threshold)
        if not result.is_anomaly:
            return None

        if settings.persist_anomaly_observations:
            db.add(AnomalyObservation(
                tenant_id=reading.tenant_id,
                device_id=device.id,
                reading_id=reading.id,
                variable_code=reading.variable_code,
                value=reading.value,
                score=result.score,
                anomaly_type=result.anomaly_type,
                message=result.message,
                observed_at=reading.captured_at,
            ))

        if result.score < settings.anomaly_alert_score_floor:
            return None

        message = result.message
        if result.recommendation:
            message = f"{message}. {result.recommendation}"
        alert, is_new = self._raise_alert(
            db,
            device=device,
            variable_code=reading.variable_code,
            value=reading.value,
            severity=AlertSeverity(anomaly_severity(result.score)),
            title=f"Anomaly detected: {reading.variable_code} ({result.anomaly_type}, score {result.score})",
            message=message,
            source="anomaly",
            rule_id=None,
            key_suffix="anomaly",
        )
        return alert if is_new else None

    def _raise_alert(
        self,
        db: Session,
        *,
        device: Device,
        variable_code: str,
        value: float,
        severity: AlertSeverity,
        title: str,
        message: str,
        source: str,
        rule_id: Optional[int],
        key_suffix,
    ) -> Tuple[Alert, bool]:
        """Create an open alert, or count another occurrence on the one already open."""
        key = dedup_key(device.id, variable_code, key_suffix)

        existing = self._find_open(db, key)
        if existing is None:
            alert = Alert(
                tenant_id=device.tenant_id,
                device_id=device.id,
                rule_id=rule_id,
                variable_code=variable_code,
                value=value,
                last_value=value,
                severity=severity,
                title=title,
                message=message,
                status=AlertStatus.OPEN,
                source=source,
                dedup_key=key,
                occurrence_count=1,
                created_at=datetime.now(timezone.utc),
            )
            try:
                with db.begin_nested():
                    db.add(alert)
                metrics.record_alert_created(source)
                return alert, True
            except IntegrityError:
                # Lost the race against a concurrent insert for the same condition
                existing = self._find_open(db, key)
                if existing is None:
                    raise

        return self._touch(db, existing, value), False

    def _find_open(self, db: Session, key: str) -> Optional[Alert]:
        return db.query(Alert).filter(Alert.dedup_key == key).first()

    def _touch(self, db: Session, alert: Alert, value: float) -> Alert:
        db.query(Alert).filter(Alert.id == alert.id).update(
            {Alert.occurrence_count: Alert.occurrence_count + 1, Alert.last_value: value},
            synchronize_session=False,
        )
        db.refresh(alert)

        escalated = False
        if alert.occurrence_count % self.escalation_occurrences == 0 and alert.severity != AlertSeverity.CRITICAL:
            previous = alert.severity
            alert.severity = SEVERITY_LADDER[SEVERITY_LADDER.index(alert.severity) + 1]
            alert.escalated = True
            alert.escalated_at = datetime.now(timezone.utc)
            alert.notified_at = None
            escalated = True
            logger.warning(
                f"Escalated alert {alert.id} from {previous.value} to {alert.severity.value} "
                f"after {alert.occurrence_count} occurrences"
            )
        metrics.record_alert_deduplicated(escalated)
        return alert

    def create_manual_alert(
        self,
        db: Session,
        device: Device,
        variable_code: str,
        title: str,
        message: str,
        severity: AlertSeverity = AlertSeverity.WARNING,
        value: float = 0.0,
    ) -> Alert:
        """Operator-raised alert. Shares the open-alert guard with rule alerts."""
        alert, _ = self._raise_alert(
            db,
            device=device,
            variable_code=variable_code,
            value=value,
            severity=severity,
            title=title,
            message=message,
            source="manual",
            rule_id=None,
            key_suffix="manual",
        )
        return alert

    def transition_status(self, db: Session, alert: Alert, new_status: AlertStatus) -> Alert:
        """Move an alert along its lifecycle; leaving open frees the condition for a new alert."""
        new_status = AlertStatus(new_status)
        if new_status not in ALLOWED_TRANSITIONS[alert.status]:
            raise InvalidTransition(f"Cannot change alert from {alert.status.value} to {new_status.value}")

        now = datetime.now(timezone.utc)
        alert.status = new_status
        alert.dedup_key = None
        if new_status == AlertStatus.ACKNOWLEDGED:
            alert.acknowledged_at = now
        elif new_status == AlertStatus.RESOLVED:
            alert.resolved_at = now
        elif new_status == AlertStatus.CLOSED:
            alert.closed_at = now
        return alert


# Global alert engine instance
alert_engine = AlertEngine()
