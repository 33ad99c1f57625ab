"""Fleet health endpoints: scheduled device check, connectivity stats, metrics."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from auth import require_cron_secret, require_operator
from database import get_db
from health_monitoring_service import health_monitoring_service
from metrics import metrics

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/device-check", dependencies=[Depends(require_cron_secret)])
def run_device_check(send_alerts: bool = Query(True)):
    """Classify all active devices and notify tenants about offline ones.

    Called by an external scheduler with the X-Cron-Secret header.
    """
    return health_monitoring_service.run_check(send_alerts=send_alerts)


@router.get("/devices/stats", dependencies=[Depends(require_operator)])
def get_device_stats(db: Session = Depends(get_db)):
    """Online / offline / never connected counts (offline means no data for over 3 hours)."""
    return health_monitoring_service.fleet_stats(db)


@router.get("/metrics", dependencies=[Depends(require_operator)])
def get_metrics():
    """Ingestion, alerting and notification counters since process start."""
    return metrics.get_stats()
