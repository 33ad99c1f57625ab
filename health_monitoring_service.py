"""Fleet connectivity sweep and per-device health scoring."""
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from anomaly_detection import DeviceHealthScore, calculate_device_health
from config import settings
from connectivity import classify, hours_between, summarize, to_utc
from database import SessionLocal
from models import Alert, AnomalyObservation, Device, DeviceStatus, InboundMessage, ParseStatus
from notification_dispatcher import NotificationDispatcher, notification_dispatcher

logger = logging.getLogger(__name__)


class HealthMonitoringService:
    """Periodically classifies every active device and reports offline ones."""

    def __init__(self, dispatcher: NotificationDispatcher = notification_dispatcher, session_factory=SessionLocal):
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        """Start the health monitoring service."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Health monitoring service is already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker_loop, name="health-monitor", daemon=True)
        self._thread.start()
        logger.info("Health monitoring service started")

    def stop(self):
        """Stop the health monitoring service."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Health monitoring service stopped")

    def _worker_loop(self):
        while not self._stop_event.wait(settings.health_check_interval_seconds):
            try:
                self.run_check(send_alerts=True)
            except Exception as e:
                logger.error(f"Error in health monitoring worker loop: {e}", exc_info=True)

    def run_check(self, send_alerts: bool = True, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Classify all active, assigned devices; notify about offline and never-connected ones."""
        now = now or datetime.now(timezone.utc)
        db = self.session_factory()
        try:
            devices = db.query(Device).options(
                joinedload(Device.inventory), joinedload(Device.tenant)
            ).filter(
                Device.status == DeviceStatus.ACTIVE,
                Device.tenant_id.isnot(None),
            ).order_by(Device.id).all()

            results = []
            flagged = []
            for device in devices:
                report = classify(device.last_seen_at, now, device.status)
                results.append({
                    "device_id": device.id,
                    "name": device.display_name,
                    "tenant_id": device.tenant_id,
                    **report.to_dict(),
                })
                if report.needs_attention:
                    flagged.append((device, report))

            summary = None
            if send_alerts and flagged:
                summary = self.dispatcher.dispatch_offline_report(db, flagged)
            db.commit()

            stats = summarize((device.last_seen_at for device in devices), now)
            logger.info(
                f"Device health check: {stats['total']} devices, {stats['online']} online, "
                f"{stats['offline']} offline, {stats['never_connected']} never connected"
            )
            return {
                "checked_at": now.isoformat(),
                "stats": stats,
                "flagged": len(flagged),
                "notifications_sent": summary.sent if summary else 0,
                "errors": summary.errors if summary else [],
                "devices": results,
            }
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def fleet_stats(self, db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
        rows = db.query(Device.last_seen_at).filter(
            Device.status == DeviceStatus.ACTIVE,
            Device.tenant_id.isnot(None),
        ).all()
        return summarize((row.last_seen_at for row in rows), now)

    def device_health(
        self, db: Session, device: Device, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Health score of one device with the inputs it was computed from."""
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=settings.health_lookback_days)

        recent_alerts = db.query(func.count(Alert.id)).filter(
            Alert.device_id == device.id,
            Alert.created_at >= since,
        ).scalar() or 0

        anomaly_count = db.query(func.count(AnomalyObservation.id)).filter(
            AnomalyObservation.device_id == device.id,
            AnomalyObservation.observed_at >= since,
        ).scalar() or 0

        received = db.query(InboundMessage.received_at).filter(
            InboundMessage.device_id == device.id,
            InboundMessage.parse_status == ParseStatus.PARSED,
            InboundMessage.received_at >= since,
        ).order_by(InboundMessage.received_at).all()
        telemetry_gaps = 0
        previous = None
        for row in received:
            current = to_utc(row.received_at)
            if previous is not None and hours_between(previous, current) > settings.offline_threshold_hours:
                telemetry_gaps += 1
            previous = current

        score: DeviceHealthScore = calculate_device_health(
            last_seen_at=device.last_seen_at,
            status=device.status,
            recent_alerts=recent_alerts,
            telemetry_gaps=telemetry_gaps,
            anomaly_count=anomaly_count,
            now=now,
        )
        return {
            "device_id": device.id,
            "score": score.score,
            "status": score.status,
            "issues": score.issues,
            "recommendations": score.recommendations,
            "inputs": {
                "lookback_days": settings.health_lookback_days,
                "recent_alerts": recent_alerts,
                "telemetry_gaps": telemetry_gaps,
                "anomaly_count": anomaly_count,
                "last_seen_at": to_utc(device.last_seen_at).isoformat() if device.last_seen_at else None,
            },
        }


# Global health monitoring service instance
health_monitoring_service = HealthMonitoringService()
