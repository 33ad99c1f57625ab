from datetime import datetime, timedelta, timezone

import pytest

from connectivity import (
    DEGRADED, DIAGNOSTIC_HINTS, NEVER_CONNECTED, OFFLINE, ONLINE, classify, fleet_status, summarize
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "age, expected",
    [
        (timedelta(minutes=30), ONLINE),
        (timedelta(hours=1), ONLINE),
        (timedelta(hours=2), DEGRADED),
        (timedelta(hours=3), DEGRADED),
        (timedelta(hours=4), OFFLINE),
        (timedelta(minutes=-10), ONLINE),
    ],
)
def test_classify_by_age(age, expected):
    report = classify(NOW - age, NOW)

    assert report.status == expected


def test_never_connected():
    report = classify(None, NOW, "active")

    assert report.status == NEVER_CONNECTED
    assert report.hours_since_last_seen is None
    assert report.needs_attention
    assert report.diagnostic_hints == list(DIAGNOSTIC_HINTS)
    assert report.recommendation == "Verify device installation and connectivity."


def test_online_has_no_hints():
    report = classify(NOW - timedelta(minutes=5), NOW)

    assert report.diagnostic_hints == []
    assert not report.needs_attention


def test_offline_report():
    report = classify(NOW - timedelta(hours=5), NOW, "active")

    assert report.needs_attention
    assert report.to_dict() == {
        "status": OFFLINE,
        "hours_since_last_seen": 5.0,
        "diagnostic_hints": list(DIAGNOSTIC_HINTS),
        "operational_status": "active",
    }


def test_naive_timestamps_are_utc():
    naive = (NOW - timedelta(minutes=30)).replace(tzinfo=None)

    assert classify(naive, NOW).status == ONLINE


def test_custom_thresholds():
    report = classify(NOW - timedelta(hours=2), NOW, online_hours=0.5, offline_hours=1.5)

    assert report.status == OFFLINE


def test_fleet_status_counts_degraded_as_online():
    assert fleet_status(NOW - timedelta(hours=2), NOW) == ONLINE
    assert fleet_status(NOW - timedelta(hours=4), NOW) == OFFLINE
    assert fleet_status(None, NOW) == NEVER_CONNECTED


def test_summarize():
    counts = summarize([NOW, NOW - timedelta(hours=2), NOW - timedelta(days=1), None], NOW)

    assert counts == {"total": 4, ONLINE: 2, OFFLINE: 1, NEVER_CONNECTED: 1}
