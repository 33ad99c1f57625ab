from datetime import datetime, timedelta, timezone

import pytest

from anomaly_detection import anomaly_severity, calculate_device_health, detect_anomaly

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_insufficient_history():
    result = detect_anomaly(100, [1, 2, 3, 4])

    assert not result.is_anomaly
    assert result.score == 0
    assert result.message == "Insufficient data for anomaly detection"


def test_spike():
    # mean 10, standard deviation 2
    result = detect_anomaly(20, [8, 12] * 5)

    assert result.is_anomaly
    assert result.anomaly_type == "spike"
    assert result.score == 100
    assert result.message == "Unusual spike detected: 20.00 (expected ~10.00)"
    assert result.recommendation == "Check for sensor malfunction or environmental changes"


def test_drop():
    result = detect_anomaly(3, [8, 12] * 5)

    assert result.is_anomaly
    assert result.anomaly_type == "drop"
    # z = 3.5 -> 3.5 / 2.5 * 50 = 70
    assert result.score == 70


def test_within_normal_range():
    result = detect_anomaly(11, [8, 12] * 5)

    assert not result.is_anomaly
    assert result.anomaly_type == "normal"
    assert result.score == 10


def test_constant_baseline():
    assert not detect_anomaly(5, [5] * 6).is_anomaly

    result = detect_anomaly(6, [5] * 6)
    assert result.is_anomaly
    assert result.score == 100
    assert result.anomaly_type == "spike"


def test_trend_change():
    result = detect_anomaly(12.5, [10] * 5 + [15] * 5)

    assert result.is_anomaly
    assert result.anomaly_type == "trend"
    assert result.score == 50
    assert result.message == "Significant trend change detected: 50.0% shift"


def test_trend_from_zero_baseline():
    result = detect_anomaly(0.5, [0] * 5 + [1] * 5)

    assert result.anomaly_type == "trend"
    assert result.score == 100


def test_healthy_device():
    health = calculate_device_health(NOW - timedelta(hours=1), "active", 0, 0, 0, now=NOW)

    assert health.score == 100
    assert health.status == "healthy"
    assert health.issues == []


def test_never_seen_suspended_device():
    health = calculate_device_health(None, "suspended", 0, 0, 0, now=NOW)

    assert health.score == 30
    assert health.status == "critical"
    assert "Device has never reported data" in health.issues
    assert "Check subscription payment status" in health.recommendations


def test_degraded_device():
    health = calculate_device_health(NOW - timedelta(hours=30), "active", 6, 6, 4, now=NOW)

    # 100 - 15 (offline > 24h) - 10 (alerts) - 15 (gaps) - 10 (anomalies)
    assert health.score == 50
    assert health.status == "warning"
    assert "Elevated alerts: 6 alerts" in health.issues
    assert "Multiple anomalies detected: 4" in health.issues


def test_score_floor_is_zero():
    health = calculate_device_health(None, "suspended", 20, 10, 10, now=NOW)

    assert health.score == 0


@pytest.mark.parametrize("score, severity", [(100, "critical"), (85, "critical"), (84, "warning"), (60, "warning"), (59, "info")])
def test_anomaly_severity(score, severity):
    assert anomaly_severity(score) == severity
