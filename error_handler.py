"""Error taxonomy for ingestion and retry logic for outbound notifications."""
import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class IngestError(Exception):
    """Base class for errors surfaced to devices by the ingestion endpoints."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class IngestValidationError(IngestError):
    """Request is missing an identifier or data, or exceeds size limits."""

    status_code = 400
    public_message = "Invalid request"


class ParseError(IngestError):
    """Payload could not be turned into readings."""

    status_code = 400
    public_message = "Unable to parse payload"


class NoValidData(ParseError):
    """Zero (variable, value) pairs could be extracted."""

    public_message = "No valid data to ingest"


class DeviceNotFound(IngestError):
    """None of the supplied identifiers matched a known device."""

    status_code = 404
    public_message = "Device not found"


class RateLimitExceeded(IngestError):
    """Device sent more messages than its per-minute or per-hour allowance."""

    status_code = 429
    public_message = "Rate limit exceeded"


class PersistenceError(IngestError):
    """Storage failed while writing a message's readings."""

    status_code = 500
    public_message = "Internal server error"


class RetryHandler:
    """
    Handles retries for transient failures.
    """

    def __init__(self, max_retries: int = 3, retry_delay: float = 1.0):
        """
        Initialize retry handler.

        Args:
            max_retries: Maximum number of attempts
            retry_delay: Delay before the first retry in seconds
        """
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """
        Determine if an error should be retried.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (1-indexed)

        Returns:
            True if should retry, False otherwise
        """
        if attempt >= self.max_retries:
            return False

        retryable_errors = (
            requests.ConnectionError,
            requests.Timeout,
            ConnectionError,
            TimeoutError,
        )

        if isinstance(error, retryable_errors):
            return True

        error_str = str(error).lower()
        transient_indicators = [
            "timeout",
            "connection",
            "network",
            "temporary",
            "retry"
        ]

        return any(indicator in error_str for indicator in transient_indicators)

    def get_retry_delay(self, attempt: int) -> float:
        """Exponential backoff delay before the next attempt."""
        return self.retry_delay * (2 ** (attempt - 1))


retry_handler = RetryHandler(max_retries=3, retry_delay=1.0)
