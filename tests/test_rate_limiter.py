import metrics as metrics_module
from metrics import MetricsCollector
from rate_limiter import RateLimiter


def test_per_minute_limit_rejects_and_counts_violation():
    limiter = RateLimiter(max_messages_per_minute=2)

    assert limiter.is_allowed("WAT-001", now=0)[0]
    assert limiter.is_allowed("WAT-001", now=1)[0]
    allowed, reason = limiter.is_allowed("WAT-001", now=2)

    assert not allowed
    assert "messages/minute" in reason
    assert limiter.violations["WAT-001"] == 1
    assert limiter.is_allowed("WAT-001", now=61)[0]


def test_per_hour_limit():
    limiter = RateLimiter(max_messages_per_minute=100, max_messages_per_hour=3)

    for second in (0, 100, 200):
        assert limiter.is_allowed("WAT-001", now=second)[0]
    allowed, reason = limiter.is_allowed("WAT-001", now=300)

    assert not allowed
    assert "messages/hour" in reason
    assert limiter.is_allowed("WAT-001", now=3601)[0]


def test_idle_identifiers_are_dropped_once_their_window_expires():
    limiter = RateLimiter(max_messages_per_minute=1)
    for i in range(5000):
        limiter.is_allowed(f"GHOST-{i}", now=0)
    limiter.is_allowed("GHOST-0", now=0)
    assert limiter.tracked_identifiers() == 5000
    assert limiter.violations["GHOST-0"] == 1

    limiter.is_allowed("WAT-001", now=10000)

    assert limiter.tracked_identifiers() < 10
    assert "GHOST-0" not in limiter.violations


def test_active_identifiers_survive_a_sweep():
    limiter = RateLimiter(max_messages_per_minute=1)
    limiter.is_allowed("WAT-001", now=0)
    limiter.is_allowed("WAT-002", now=3000)

    limiter.is_allowed("WAT-003", now=3700)

    assert limiter.tracked_identifiers() == 2
    assert not limiter.is_allowed("WAT-003", now=3710)[0]


def test_rate_limit_hits_by_identifier_is_bounded(monkeypatch):
    monkeypatch.setattr(metrics_module, "MAX_TRACKED_IDENTIFIERS", 3)
    collector = MetricsCollector()

    for i in range(10):
        collector.record_rate_limit_hit(f"GHOST-{i}")
    collector.record_rate_limit_hit("GHOST-0")

    stats = collector.get_stats()["rate_limiting"]
    assert stats["total_hits"] == 11
    assert stats["by_identifier"] == {"GHOST-0": 2, "GHOST-1": 1, "GHOST-2": 1}
