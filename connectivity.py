"""Device connectivity classification from last-seen recency.

Pure functions: no database access, no side effects. The operational status
of a device is reported alongside the connectivity state but never changed
here; it is an administrative field.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from config import settings

ONLINE = "online"
DEGRADED = "degraded"
OFFLINE = "offline"
NEVER_CONNECTED = "never_connected"

# Shown to operators only, never used in automated decisions
DIAGNOSTIC_HINTS = (
    "Power outage at device location",
    "Internet/network connectivity issues",
    "SIM card or cellular data issues",
    "Device hardware malfunction",
    "Firmware crash or hang",
)

RECOMMENDATIONS = {
    OFFLINE: "Contact tenant to physically check the device. Verify power supply and network connectivity.",
    NEVER_CONNECTED: "Verify device installation and connectivity.",
    DEGRADED: "Monitor device. If issues persist, contact tenant to check signal strength.",
    ONLINE: "Device is operating normally.",
}


@dataclass
class ConnectivityReport:
    status: str
    hours_since_last_seen: Optional[float]
    diagnostic_hints: List[str] = field(default_factory=list)
    operational_status: Optional[str] = None

    @property
    def needs_attention(self) -> bool:
        return self.status in (OFFLINE, NEVER_CONNECTED)

    @property
    def recommendation(self) -> str:
        return RECOMMENDATIONS[self.status]

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "hours_since_last_seen": (
                round(self.hours_since_last_seen, 2) if self.hours_since_last_seen is not None else None
            ),
            "diagnostic_hints": list(self.diagnostic_hints),
            "operational_status": self.operational_status,
        }


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes (SQLite) are stored in UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_between(earlier: datetime, later: datetime) -> float:
    return (to_utc(later) - to_utc(earlier)).total_seconds() / 3600


def classify(
    last_seen_at: Optional[datetime],
    now: Optional[datetime] = None,
    operational_status: Optional[str] = None,
    online_hours: Optional[float] = None,
    offline_hours: Optional[float] = None,
) -> ConnectivityReport:
    """
    Classify one device.

    never_connected without a last-seen time, online up to ``online_hours``,
    degraded up to ``offline_hours``, offline beyond. A last-seen time in the
    future counts as online.
    """
    online_hours = settings.online_threshold_hours if online_hours is None else online_hours
    offline_hours = settings.offline_threshold_hours if offline_hours is None else offline_hours
    now = now or datetime.now(timezone.utc)
    if hasattr(operational_status, "value"):
        operational_status = operational_status.value

    if last_seen_at is None:
        return ConnectivityReport(NEVER_CONNECTED, None, list(DIAGNOSTIC_HINTS), operational_status)

    hours = hours_between(last_seen_at, now)
    if hours <= online_hours:
        return ConnectivityReport(ONLINE, hours, [], operational_status)
    if hours <= offline_hours:
        status = DEGRADED
    else:
        status = OFFLINE
    return ConnectivityReport(status, hours, list(DIAGNOSTIC_HINTS), operational_status)


def fleet_status(
    last_seen_at: Optional[datetime],
    now: Optional[datetime] = None,
    offline_hours: Optional[float] = None,
) -> str:
    """Two-state view for fleet dashboards: degraded counts as online until the offline threshold."""
    offline_hours = settings.offline_threshold_hours if offline_hours is None else offline_hours
    if last_seen_at is None:
        return NEVER_CONNECTED
    now = now or datetime.now(timezone.utc)
    return ONLINE if hours_between(last_seen_at, now) <= offline_hours else OFFLINE


def summarize(last_seen_values: Iterable[Optional[datetime]], now: Optional[datetime] = None) -> Dict[str, int]:
    """Fleet counts in the two-state view."""
    now = now or datetime.now(timezone.utc)
    counts = {"total": 0, ONLINE: 0, OFFLINE: 0, NEVER_CONNECTED: 0}
    for last_seen_at in last_seen_values:
        counts["total"] += 1
        counts[fleet_status(last_seen_at, now)] += 1
    return counts
