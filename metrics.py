"""In-process counters for ingestion, alerting and notification delivery."""
import time
import threading
from collections import defaultdict
from typing import Dict
import logging

logger = logging.getLogger(__name__)

# Per-identifier breakdowns stop growing here; totals keep counting
MAX_TRACKED_IDENTIFIERS = 1000


class MetricsCollector:
    """
    Collects metrics for the ingestion pipeline and the alerting path.
    Counters reset on process restart.
    """

    def __init__(self):
        self._lock = threading.Lock()

        # Message counters
        self.messages_received = defaultdict(int)  # {source: count}
        self.messages_parsed = defaultdict(int)  # {source: count}
        self.messages_failed = defaultdict(int)  # {reason: count}
        self.readings_written = 0
        self.assignment_pending = 0

        # Rate limiting
        self.rate_limit_hits_total = 0
        self.rate_limit_hits = {}  # {identifier: count}, first MAX_TRACKED_IDENTIFIERS only

        # Alerting
        self.alerts_created = defaultdict(int)  # {source: count}
        self.alerts_deduplicated = 0
        self.alerts_escalated = 0
        self.alert_evaluation_errors = 0

        # Notifications
        self.notifications_sent = defaultdict(int)  # {channel: count}
        self.notifications_failed = defaultdict(int)  # {channel: count}

        # Timing
        self.processing_times = []  # ingestion durations in ms

        self.start_time = time.time()

    def record_message_received(self, source: str):
        with self._lock:
            self.messages_received[source] += 1

    def record_message_parsed(self, source: str, reading_count: int, assignment_pending: bool = False):
        with self._lock:
            self.messages_parsed[source] += 1
            self.readings_written += reading_count
            if assignment_pending:
                self.assignment_pending += 1

    def record_message_failed(self, reason: str):
        with self._lock:
            self.messages_failed[reason] += 1
        logger.debug(f"Message failed: {reason}")

    def record_rate_limit_hit(self, identifier: str):
        with self._lock:
            self.rate_limit_hits_total += 1
            if identifier in self.rate_limit_hits or len(self.rate_limit_hits) < MAX_TRACKED_IDENTIFIERS:
                self.rate_limit_hits[identifier] = self.rate_limit_hits.get(identifier, 0) + 1

    def record_alert_created(self, source: str):
        with self._lock:
            self.alerts_created[source] += 1

    def record_alert_deduplicated(self, escalated: bool = False):
        with self._lock:
            self.alerts_deduplicated += 1
            if escalated:
                self.alerts_escalated += 1

    def record_alert_evaluation_error(self):
        with self._lock:
            self.alert_evaluation_errors += 1

    def record_notification(self, channel: str, success: bool):
        with self._lock:
            if success:
                self.notifications_sent[channel] += 1
            else:
                self.notifications_failed[channel] += 1

    def record_processing_time(self, duration_ms: float):
        """Record message processing time."""
        with self._lock:
            self.processing_times.append(duration_ms)
            # Keep only last 1000 processing times
            if len(self.processing_times) > 1000:
                self.processing_times = self.processing_times[-1000:]

    def get_stats(self) -> Dict:
        """Get overall statistics."""
        with self._lock:
            total_received = sum(self.messages_received.values())
            total_parsed = sum(self.messages_parsed.values())
            total_failed = sum(self.messages_failed.values())

            avg_processing_time = (
                sum(self.processing_times) / len(self.processing_times)
                if self.processing_times else 0
            )

            return {
                "uptime_seconds": int(time.time() - self.start_time),
                "messages": {
                    "total_received": total_received,
                    "total_parsed": total_parsed,
                    "total_failed": total_failed,
                    "assignment_pending": self.assignment_pending,
                    "success_rate": (
                        total_parsed / total_received * 100
                        if total_received > 0 else 0
                    ),
                    "by_source": dict(self.messages_received),
                    "failures_by_reason": dict(self.messages_failed),
                },
                "readings": {"total_written": self.readings_written},
                "rate_limiting": {
                    "total_hits": self.rate_limit_hits_total,
                    "by_identifier": dict(self.rate_limit_hits),
                },
                "alerts": {
                    "created": dict(self.alerts_created),
                    "deduplicated": self.alerts_deduplicated,
                    "escalated": self.alerts_escalated,
                    "evaluation_errors": self.alert_evaluation_errors,
                },
                "notifications": {
                    "sent": dict(self.notifications_sent),
                    "failed": dict(self.notifications_failed),
                },
                "processing": {
                    "avg_time_ms": round(avg_processing_time, 2),
                    "samples": len(self.processing_times),
                },
            }


# Global metrics collector instance
metrics = MetricsCollector()
