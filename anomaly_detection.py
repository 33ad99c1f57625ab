"""Statistical anomaly detection for readings and device health scoring.

Both functions are deterministic. ``detect_anomaly`` is a z-score test with a
short-window trend check; it needs no training and gives the same answer for
the same inputs.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from connectivity import hours_between

MIN_HISTORY = 5
TREND_MIN_HISTORY = 10
TREND_CHANGE_THRESHOLD = 0.2


@dataclass
class AnomalyResult:
    is_anomaly: bool
    score: int  # 0-100, higher is more anomalous
    anomaly_type: str  # spike, drop, trend, normal
    message: str
    recommendation: Optional[str] = None


@dataclass
class DeviceHealthScore:
    score: int
    status: str  # healthy, warning, critical
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def detect_anomaly(current: float, history: Sequence[float], threshold: float = 2.5) -> AnomalyResult:
    """Score ``current`` against ``history`` (oldest first)."""
    if len(history) < MIN_HISTORY:
        return AnomalyResult(False, 0, "normal", "Insufficient data for anomaly detection")

    mean = _mean(history)
    variance = sum((value - mean) ** 2 for value in history) / len(history)
    std_dev = math.sqrt(variance)

    if std_dev == 0:
        if current != mean:
            return AnomalyResult(True, 100, "spike", "Value deviates from constant baseline")
        return AnomalyResult(False, 0, "normal", "Normal")

    z_score = abs(current - mean) / std_dev
    anomaly_score = min(100, _round_half_up(z_score / threshold * 50))

    if z_score > threshold:
        anomaly_type = "spike" if current > mean else "drop"
        return AnomalyResult(
            True,
            anomaly_score,
            anomaly_type,
            f"Unusual {anomaly_type} detected: {current:.2f} (expected ~{mean:.2f})",
            recommendation=(
                "Check for sensor malfunction or environmental changes"
                if anomaly_type == "spike"
                else "Verify device connectivity and sensor calibration"
            ),
        )

    if len(history) >= TREND_MIN_HISTORY:
        recent_mean = _mean(history[-5:])
        older_mean = _mean(history[-10:-5])
        if older_mean != 0:
            change = abs(recent_mean - older_mean) / abs(older_mean)
        elif recent_mean != 0:
            change = 1.0
        else:
            change = 0.0

        if change > TREND_CHANGE_THRESHOLD:
            return AnomalyResult(
                True,
                min(100, _round_half_up(change * 100)),
                "trend",
                f"Significant trend change detected: {change * 100:.1f}% shift",
                recommendation="Monitor closely for continued trend changes",
            )

    return AnomalyResult(False, anomaly_score, "normal", "Value within normal range")


def calculate_device_health(
    last_seen_at: Optional[datetime],
    status: Optional[str],
    recent_alerts: int,
    telemetry_gaps: int,
    anomaly_count: int,
    now: Optional[datetime] = None,
) -> DeviceHealthScore:
    """Start at 100 and deduct a fixed amount per issue category."""
    now = now or datetime.now(timezone.utc)
    if hasattr(status, "value"):
        status = status.value

    score = 100
    issues = []
    recommendations = []

    if last_seen_at is None:
        score -= 40
        issues.append("Device has never reported data")
        recommendations.append("Verify device installation and connectivity")
    else:
        hours = hours_between(last_seen_at, now)
        if hours > 168:
            score -= 35
            issues.append("Device offline for over a week")
            recommendations.append("Check device power and network connection")
        elif hours > 72:
            score -= 25
            issues.append("Device offline for over 3 days")
            recommendations.append("Verify device status on-site")
        elif hours > 24:
            score -= 15
            issues.append("Device offline for over 24 hours")
            recommendations.append("Monitor for connectivity issues")

    if status == "inactive":
        score -= 20
        issues.append("Device marked as inactive")
    elif status == "suspended":
        score -= 30
        issues.append("Device subscription suspended")
        recommendations.append("Check subscription payment status")

    if recent_alerts > 10:
        score -= 20
        issues.append(f"High alert frequency: {recent_alerts} alerts")
        recommendations.append("Review alert thresholds and device calibration")
    elif recent_alerts > 5:
        score -= 10
        issues.append(f"Elevated alerts: {recent_alerts} alerts")

    if telemetry_gaps > 5:
        score -= 15
        issues.append("Frequent data transmission gaps")
        recommendations.append("Check network stability and signal strength")

    if anomaly_count > 3:
        score -= 10
        issues.append(f"Multiple anomalies detected: {anomaly_count}")
        recommendations.append("Investigate sensor readings for accuracy")

    score = max(0, score)
    if score >= 80:
        band = "healthy"
    elif score >= 50:
        band = "warning"
    else:
        band = "critical"

    return DeviceHealthScore(score=score, status=band, issues=issues, recommendations=recommendations)


def anomaly_severity(score: int) -> str:
    """Alert severity for an anomaly score."""
    if score >= 85:
        return "critical"
    if score >= 60:
        return "warning"
    return "info"
