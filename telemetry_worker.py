"""Background worker that evaluates alert rules for freshly ingested messages.

Ingestion commits first and then hands the message id over here, so a slow
or failing alert evaluation never delays or fails the device's request.
"""

import logging
import queue
import threading
from typing import Optional

from alert_engine import AlertEngine, alert_engine
from config import settings
from metrics import metrics

logger = logging.getLogger(__name__)


class TelemetryWorker:
    """Runs ``AlertEngine.process_message`` inline or on a daemon thread."""

    def __init__(self, engine: AlertEngine, mode: str = "queued", queue_size: int = 1000):
        self.engine = engine
        self.mode = mode
        self._queue: "queue.Queue[Optional[int]]" = queue.Queue(maxsize=queue_size)
        self._thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running and self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the worker thread (no-op in inline mode)."""
        if self.mode == "inline" or self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._worker_loop, name="telemetry-worker", daemon=True)
        self._thread.start()
        logger.info("Telemetry worker started")

    def stop(self, timeout: float = 5.0):
        if not self._running:
            return
        self._running = False
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass
        if self._thread:
            self._thread.join(timeout=timeout)
        logger.info("Telemetry worker stopped")

    def submit(self, message_id: int) -> None:
        """Queue a message for alert evaluation. Never raises."""
        if self.mode == "inline" or not self._running:
            self._process(message_id)
            return
        try:
            self._queue.put_nowait(message_id)
        except queue.Full:
            metrics.record_alert_evaluation_error()
            logger.error(f"Alert queue full, dropping evaluation of message {message_id}")

    def drain(self) -> None:
        """Block until every queued message has been processed."""
        if self._running:
            self._queue.join()

    def _worker_loop(self):
        while self._running:
            try:
                message_id = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                if message_id is not None:
                    self._process(message_id)
            finally:
                self._queue.task_done()

    def _process(self, message_id: int) -> None:
        try:
            self.engine.process_message(message_id)
        except Exception as e:
            metrics.record_alert_evaluation_error()
            logger.error(f"Error processing alerts for message {message_id}: {e}", exc_info=True)


telemetry_worker = TelemetryWorker(
    alert_engine,
    mode=settings.alert_evaluation_mode,
    queue_size=settings.alert_queue_size,
)
