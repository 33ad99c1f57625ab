"""Channel senders for alert notifications (email, SMS, webhook)."""
import logging
import smtplib
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import requests

from config import settings
from error_handler import RetryHandler, retry_handler

logger = logging.getLogger(__name__)


@dataclass
class OutboundNotification:
    """One rendered message for one recipient on one channel."""

    recipient: str
    subject: str
    body: str
    payload: Optional[Dict[str, Any]] = None  # structured body for webhooks


@dataclass
class SendResult:
    success: bool
    provider: str
    provider_ref: Optional[str] = None
    error: Optional[str] = None
    sent_at: Optional[datetime] = None


class NotificationSender:
    """Base class for channel senders.

    ``send`` never raises; transient failures are retried with backoff and
    the final outcome is reported in the returned ``SendResult``.
    """

    channel = "unknown"

    def __init__(self, retry: RetryHandler = retry_handler, sleep=time.sleep):
        self.retry = retry
        self._sleep = sleep

    def is_configured(self) -> bool:
        return True

    def recipient_for(self, tenant) -> Optional[str]:
        """Address of ``tenant`` on this channel, or None."""
        return None

    def send(self, notification: OutboundNotification) -> SendResult:
        if not self.is_configured():
            logger.warning(f"{self.channel} channel not configured, skipping notification to {notification.recipient}")
            return SendResult(False, self.channel, error=f"{self.channel} channel not configured")

        attempt = 1
        while True:
            try:
                result = self._send(notification)
            except Exception as e:
                if self.retry.should_retry(e, attempt):
                    delay = self.retry.get_retry_delay(attempt)
                    logger.warning(
                        f"{self.channel} send to {notification.recipient} failed (attempt {attempt}), "
                        f"retrying in {delay}s: {e}"
                    )
                    self._sleep(delay)
                    attempt += 1
                    continue
                logger.error(f"Failed to send {self.channel} notification to {notification.recipient}: {e}")
                return SendResult(False, self.channel, error=str(e))

            if result.success and result.sent_at is None:
                result.sent_at = datetime.now(timezone.utc)
            return result

    def _send(self, notification: OutboundNotification) -> SendResult:
        raise NotImplementedError


class EmailSender(NotificationSender):
    channel = "email"

    def __init__(self, host=None, port=None, user=None, password=None, sender=None, **kwargs):
        super().__init__(**kwargs)
        self.smtp_host = host or settings.smtp_host
        self.smtp_port = port or settings.smtp_port
        self.smtp_user = user or settings.smtp_user
        self.smtp_password = password or settings.smtp_password
        self.smtp_from = sender or settings.smtp_from

    def is_configured(self) -> bool:
        return bool(self.smtp_host)

    def recipient_for(self, tenant) -> Optional[str]:
        return tenant.email

    def _send(self, notification: OutboundNotification) -> SendResult:
        msg = MIMEMultipart()
        msg['From'] = self.smtp_from
        msg['To'] = notification.recipient
        msg['Subject'] = notification.subject
        msg.attach(MIMEText(notification.body, 'plain'))

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
            if self.smtp_user and self.smtp_password:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
            server.send_message(msg)

        logger.info(f"Email sent to {notification.recipient}")
        return SendResult(True, "smtp")


class SmsSender(NotificationSender):
    """Form-encoded SMS gateway; the gateway answers with code 1000 on success."""

    channel = "sms"

    def __init__(self, api_url=None, api_key=None, sender_id=None, **kwargs):
        super().__init__(**kwargs)
        self.api_url = api_url or settings.sms_api_url
        self.api_key = api_key or settings.sms_api_key
        self.sender_id = sender_id or settings.sms_sender_id

    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    def recipient_for(self, tenant) -> Optional[str]:
        return tenant.phone

    def _send(self, notification: OutboundNotification) -> SendResult:
        response = requests.post(
            self.api_url,
            data={
                "key": self.api_key,
                "to": "".join(notification.recipient.split()),
                "msg": notification.body,
                "sender_id": self.sender_id,
            },
            timeout=settings.webhook_timeout_seconds,
        )
        text = response.text
        if "1000" in text:
            logger.info(f"SMS sent to {notification.recipient}")
            return SendResult(True, "sms_gateway", provider_ref=text.strip())
        return SendResult(False, "sms_gateway", error=f"SMS gateway error: {text}")


class WebhookSender(NotificationSender):
    channel = "webhook"

    def recipient_for(self, tenant) -> Optional[str]:
        return tenant.webhook_url

    def _send(self, notification: OutboundNotification) -> SendResult:
        payload = notification.payload or {"subject": notification.subject, "message": notification.body}
        response = requests.post(
            notification.recipient,
            json=payload,
            headers={"Content-Type": "application/json"},
            timeout=settings.webhook_timeout_seconds,
        )
        if 200 <= response.status_code < 300:
            logger.info(f"Webhook sent to {notification.recipient}")
            return SendResult(True, "webhook", provider_ref=str(response.status_code))
        if response.status_code >= 500:
            # Let the retry handler see server-side failures as transient
            raise requests.ConnectionError(f"HTTP {response.status_code}: {response.text[:200]}")
        return SendResult(False, "webhook", error=f"HTTP {response.status_code}: {response.text[:200]}")


def default_senders() -> Dict[str, NotificationSender]:
    return {
        EmailSender.channel: EmailSender(),
        SmsSender.channel: SmsSender(),
        WebhookSender.channel: WebhookSender(),
    }
