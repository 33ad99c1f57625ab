"""Consolidated notification delivery.

Alerts are not sent one by one. Each dispatch cycle picks up every alert not
yet notified, sends one message per tenant on each of the tenant's channels,
and one summary to the platform operator. Every attempt is written to the
notification log, successful or not.
"""
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from config import settings
from connectivity import ConnectivityReport, NEVER_CONNECTED
from database import SessionLocal
from metrics import metrics
from models import Alert, AlertStatus, Device, NotificationLog, Tenant
from notification_service import NotificationSender, OutboundNotification, default_senders

logger = logging.getLogger(__name__)

OPERATOR_CHANNEL = "email"


@dataclass
class DispatchSummary:
    alerts: int = 0
    tenants: int = 0
    sent: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "alerts": self.alerts,
            "tenants": self.tenants,
            "sent": self.sent,
            "failed": self.failed,
            "errors": self.errors,
        }


def _channels_for(tenant: Tenant, devices: Iterable[Device]) -> List[str]:
    """Tenant channels plus any extra channels configured on the devices involved."""
    channels = list(tenant.notification_channels or [])
    for device in devices:
        for channel in device.notification_channels or []:
            if channel not in channels:
                channels.append(channel)
    return channels


def _alert_line(alert: Alert) -> str:
    device_name = alert.device.display_name if alert.device is not None else f"DEV-{alert.device_id}"
    line = f"- [{alert.severity.value.upper()}] {device_name}: {alert.title}"
    if alert.escalated:
        line += f" (escalated, {alert.occurrence_count} occurrences)"
    if alert.message:
        line += f"\n  {alert.message}"
    return line


class NotificationDispatcher:
    """Groups alerts per tenant and delivers them through the channel senders."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        senders: Optional[Dict[str, NotificationSender]] = None,
    ):
        self.session_factory = session_factory
        self.senders = senders if senders is not None else default_senders()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def dispatch(self, db: Session, alerts: Sequence[Alert]) -> DispatchSummary:
        """Notify tenants and the operator about ``alerts`` and mark them notified.

        The caller commits.
        """
        summary = DispatchSummary(alerts=len(alerts))
        if not alerts:
            return summary

        by_tenant: "OrderedDict[int, List[Alert]]" = OrderedDict()
        for alert in alerts:
            by_tenant.setdefault(alert.tenant_id, []).append(alert)
        summary.tenants = len(by_tenant)

        for tenant_id, tenant_alerts in by_tenant.items():
            tenant = db.get(Tenant, tenant_id)
            if tenant is None:
                summary.errors.append(f"Tenant {tenant_id} not found")
                continue
            subject, body = self._render_tenant_alerts(tenant, tenant_alerts)
            payload = {
                "tenant": tenant.tenant_code,
                "alerts": [self._alert_payload(alert) for alert in tenant_alerts],
            }
            channels = _channels_for(tenant, [a.device for a in tenant_alerts if a.device is not None])
            for channel in channels:
                self._deliver(
                    db, summary, tenant, channel, subject, body, payload,
                    alert_ids=[alert.id for alert in tenant_alerts],
                )

        self._send_operator_summary(db, summary, alerts)

        now = datetime.now(timezone.utc)
        for alert in alerts:
            alert.notified_at = now

        logger.info(
            f"Dispatched {summary.alerts} alert(s) to {summary.tenants} tenant(s): "
            f"{summary.sent} sent, {summary.failed} failed"
        )
        return summary

    def dispatch_pending(self) -> DispatchSummary:
        """One dispatch cycle over open alerts that have not been notified yet."""
        db = self.session_factory()
        try:
            alerts = db.query(Alert).filter(
                Alert.notified_at.is_(None),
                Alert.status == AlertStatus.OPEN,
            ).order_by(Alert.created_at, Alert.id).limit(settings.notification_batch_limit).all()
            summary = self.dispatch(db, alerts)
            db.commit()
            return summary
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispatch_offline_report(
        self, db: Session, reports: Sequence[Tuple[Device, ConnectivityReport]]
    ) -> DispatchSummary:
        """Consolidated offline-device notice per tenant, plus an operator report."""
        summary = DispatchSummary()
        by_tenant: "OrderedDict[int, List[Tuple[Device, ConnectivityReport]]]" = OrderedDict()
        for device, report in reports:
            if device.tenant_id is not None:
                by_tenant.setdefault(device.tenant_id, []).append((device, report))
        summary.tenants = len(by_tenant)

        for tenant_id, entries in by_tenant.items():
            tenant = db.get(Tenant, tenant_id)
            if tenant is None:
                continue
            device_list = "\n".join(self._offline_line(device, report) for device, report in entries)
            subject = f"Device Alert: {len(entries)} device(s) offline"
            body = (
                f"Dear {tenant.name},\n\n"
                f"The following device(s) have stopped sending data and may require attention:\n\n"
                f"{device_list}\n\n"
                f"Possible causes:\n"
                + "\n".join(f"- {hint}" for hint in entries[0][1].diagnostic_hints)
                + f"\n\nPlease check your devices and ensure they are powered on and connected.\n"
                f"Dashboard: {settings.dashboard_url}/portal"
            )
            payload = {
                "tenant": tenant.tenant_code,
                "offline_devices": [
                    {"device_id": device.id, "name": device.display_name, **report.to_dict()}
                    for device, report in entries
                ],
            }
            for channel in _channels_for(tenant, [device for device, _ in entries]):
                self._deliver(db, summary, tenant, channel, subject, body, payload)

        if reports:
            lines = []
            for device, report in reports:
                tenant_name = device.tenant.name if device.tenant is not None else "Unassigned"
                lines.append(f"{tenant_name} - {device.display_name}: {report.status}")
            self._deliver(
                db, summary, None, OPERATOR_CHANNEL,
                f"Admin Alert: {len(reports)} device(s) offline",
                f"{len(reports)} device(s) are currently offline or never connected:\n\n"
                + "\n".join(lines)
                + f"\n\nAdmin dashboard: {settings.dashboard_url}/admin/devices",
                None,
                recipient=settings.admin_email,
            )
        return summary

    def _send_operator_summary(self, db: Session, summary: DispatchSummary, alerts: Sequence[Alert]):
        tenant_names = {}
        lines = []
        for alert in alerts:
            if alert.tenant_id not in tenant_names:
                tenant = alert.tenant
                tenant_names[alert.tenant_id] = tenant.name if tenant is not None else f"Tenant {alert.tenant_id}"
            lines.append(f"{tenant_names[alert.tenant_id]} {_alert_line(alert)[2:]}")
        self._deliver(
            db, summary, None, OPERATOR_CHANNEL,
            f"Platform alert summary: {len(alerts)} new alert(s) across {len(tenant_names)} tenant(s)",
            "\n".join(lines) + f"\n\nAdmin dashboard: {settings.dashboard_url}/admin/alerts",
            None,
            alert_ids=[alert.id for alert in alerts],
            recipient=settings.admin_email,
        )

    def _deliver(
        self,
        db: Session,
        summary: DispatchSummary,
        tenant: Optional[Tenant],
        channel: str,
        subject: str,
        body: str,
        payload: Optional[Dict],
        alert_ids: Optional[List[int]] = None,
        recipient: Optional[str] = None,
    ) -> bool:
        sender = self.senders.get(channel)
        error = None
        if sender is None:
            error = f"Unknown channel: {channel}"
        elif recipient is None and tenant is not None:
            recipient = sender.recipient_for(tenant)
            if not recipient:
                error = f"No {channel} recipient configured for tenant {tenant.tenant_code}"

        sent_at = None
        if error is None:
            result = sender.send(OutboundNotification(recipient=recipient, subject=subject, body=body, payload=payload))
            success = result.success
            error = result.error
            sent_at = result.sent_at
        else:
            success = False
            logger.warning(error)

        db.add(NotificationLog(
            tenant_id=tenant.id if tenant is not None else None,
            alert_ids=alert_ids,
            channel=channel,
            recipient=recipient or "unknown",
            subject=subject,
            message=body,
            status="sent" if success else "failed",
            error_message=error,
            sent_at=sent_at,
        ))
        metrics.record_notification(channel, success)
        if success:
            summary.sent += 1
        else:
            summary.failed += 1
            summary.errors.append(f"{channel} to {recipient or 'unknown'}: {error}")
        return success

    def _render_tenant_alerts(self, tenant: Tenant, alerts: Sequence[Alert]) -> Tuple[str, str]:
        if len(alerts) == 1:
            alert = alerts[0]
            subject = f"{alert.severity.value.upper()} Alert: {alert.title}"
        else:
            critical = sum(1 for a in alerts if a.severity.value == "critical")
            subject = f"{len(alerts)} new alerts for {tenant.name}"
            if critical:
                subject += f" ({critical} critical)"
        body = (
            f"Dear {tenant.name},\n\n"
            f"The following alert(s) were raised on your devices:\n\n"
            + "\n".join(_alert_line(alert) for alert in alerts)
            + f"\n\nView details in your dashboard: {settings.dashboard_url}/portal/alerts"
        )
        return subject, body

    @staticmethod
    def _alert_payload(alert: Alert) -> Dict:
        return {
            "alert_id": alert.id,
            "device_id": alert.device_id,
            "variable_code": alert.variable_code,
            "value": alert.value,
            "severity": alert.severity.value,
            "title": alert.title,
            "message": alert.message,
            "occurrence_count": alert.occurrence_count,
            "escalated": bool(alert.escalated),
            "created_at": alert.created_at.isoformat() if alert.created_at else None,
        }

    @staticmethod
    def _offline_line(device: Device, report: ConnectivityReport) -> str:
        if report.status == NEVER_CONNECTED:
            last_seen = "Never connected"
        else:
            last_seen = f"Last seen: {report.hours_since_last_seen:.1f} hours ago"
        return f"- {device.display_name}: {last_seen}"

    def start(self):
        """Run dispatch cycles every ``notification_batch_seconds`` on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker_loop, name="notification-dispatcher", daemon=True)
        self._thread.start()
        logger.info(f"Notification dispatcher started (every {settings.notification_batch_seconds}s)")

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Notification dispatcher stopped")

    def _worker_loop(self):
        while not self._stop_event.wait(settings.notification_batch_seconds):
            try:
                self.dispatch_pending()
            except Exception as e:
                logger.error(f"Error in notification dispatch cycle: {e}", exc_info=True)


notification_dispatcher = NotificationDispatcher()
