"""Per-device sliding-window rate limiting for the ingestion endpoints."""
import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Tuple
import logging

from config import settings

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600


class RateLimiter:
    """
    Counts accepted messages per device identifier over the last minute and
    the last hour. Rejected attempts are not counted against the window.

    Identifiers are checked before the device is resolved, so any string a
    client sends gets an entry. Entries whose hour window has emptied are
    swept at most once per ``prune_interval`` seconds.
    """

    def __init__(
        self,
        max_messages_per_minute: int = 60,
        max_messages_per_hour: int = 3600,
        prune_interval: float = 60,
    ):
        self.max_per_minute = max_messages_per_minute
        self.max_per_hour = max_messages_per_hour
        self.prune_interval = prune_interval

        self._history: Dict[str, Deque[float]] = {}
        self.violations: Dict[str, int] = defaultdict(int)
        self._last_prune = None
        self._lock = threading.Lock()

    def is_allowed(self, identifier: str, now: float = None) -> Tuple[bool, str]:
        """
        Check whether a device may send another message and record it if so.

        Returns:
            Tuple of (is_allowed, reason)
        """
        current_time = time.time() if now is None else now
        with self._lock:
            if self._last_prune is None or current_time - self._last_prune >= self.prune_interval:
                self._prune(current_time)

            timestamps = self._history.get(identifier) or deque()
            while timestamps and timestamps[0] <= current_time - WINDOW_SECONDS:
                timestamps.popleft()

            last_minute = sum(1 for ts in timestamps if ts > current_time - 60)
            if last_minute >= self.max_per_minute:
                self.violations[identifier] += 1
                logger.warning(
                    f"Rate limit exceeded for device {identifier}: "
                    f"{last_minute} messages in last minute (limit: {self.max_per_minute})"
                )
                return False, f"Rate limit exceeded: {last_minute} messages/minute (limit: {self.max_per_minute})"

            if len(timestamps) >= self.max_per_hour:
                self.violations[identifier] += 1
                logger.warning(
                    f"Rate limit exceeded for device {identifier}: "
                    f"{len(timestamps)} messages in last hour (limit: {self.max_per_hour})"
                )
                return False, f"Rate limit exceeded: {len(timestamps)} messages/hour (limit: {self.max_per_hour})"

            timestamps.append(current_time)
            self._history[identifier] = timestamps
            return True, "OK"

    def tracked_identifiers(self) -> int:
        with self._lock:
            return len(self._history)

    def _prune(self, current_time: float):
        cutoff = current_time - WINDOW_SECONDS
        idle = [key for key, timestamps in self._history.items() if not timestamps or timestamps[-1] <= cutoff]
        for key in idle:
            del self._history[key]
            self.violations.pop(key, None)
        self._last_prune = current_time
        if idle:
            logger.debug(f"Dropped rate limit state for {len(idle)} idle identifier(s)")

    def reset(self):
        with self._lock:
            self._history.clear()
            self.violations.clear()
            self._last_prune = None


rate_limiter = RateLimiter(
    max_messages_per_minute=settings.rate_limit_per_minute,
    max_messages_per_hour=settings.rate_limit_per_hour,
)
