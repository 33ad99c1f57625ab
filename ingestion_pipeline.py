"""Ingestion pipeline: validate, record, parse, resolve, persist, then hand off to alerting.

Requests that break a size limit are rejected before anything is written.
Every other attempt commits an inbound message row before storage work
begins, including ones that crash the parser. Readings, the "parsed" status
and the device's last-seen update share one transaction.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from config import settings
from database import SessionLocal
from error_handler import (
    DeviceNotFound,
    IngestError,
    IngestValidationError,
    NoValidData,
    ParseError,
    PersistenceError,
)
from identity_resolver import IdentityHints, IdentityResolver, ResolvedIdentity, identity_resolver
from metrics import metrics
from models import Device, InboundMessage, MessageSource, ParseStatus, TelemetryReading
from parsers.wire_formats import ParsedPayload, WireFormat, WireFormatParser

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    message_id: int
    reading_count: int
    received_at: datetime
    assignment_pending: bool = False
    values: Dict[str, float] = field(default_factory=dict)


class IngestionPipeline:
    """Runs one inbound message through the ingestion steps.

    ``alert_hook`` receives the message id after the ingestion transaction
    commits. Whatever it raises is logged and swallowed so that alerting can
    never fail an acknowledged ingestion.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        parser: Optional[WireFormatParser] = None,
        resolver: Optional[IdentityResolver] = None,
        alert_hook: Optional[Callable[[int], Any]] = None,
    ):
        self.session_factory = session_factory
        self.parser = parser or WireFormatParser(
            max_variables=settings.max_variables_per_message,
            max_code_length=settings.max_variable_code_length,
        )
        self.resolver = resolver or identity_resolver
        self.alert_hook = alert_hook

    def ingest(
        self,
        payload: Any,
        wire_format: WireFormat,
        source: MessageSource,
        hints: IdentityHints,
        raw_text: str,
        metric_code: Optional[str] = None,
        client_timestamp: Optional[datetime] = None,
        received_at: Optional[datetime] = None,
    ) -> IngestResult:
        """
        Ingest one message.

        Raises:
            IngestValidationError: missing identifier, oversized payload or too many
                variables (no record written)
            ParseError / NoValidData: payload yielded no readings (message marked failed)
            DeviceNotFound: no identifier matched (message marked failed)
            PersistenceError: storage failed while writing readings
        """
        started = time.monotonic()
        self._validate(hints, raw_text)
        received_at = received_at or datetime.now(timezone.utc)
        captured_at = received_at
        if settings.trust_client_timestamps and client_timestamp is not None:
            captured_at = client_timestamp

        parsed = parse_failure = None
        try:
            parsed = self.parser.parse(wire_format, payload)
        except IngestValidationError as exc:
            logger.warning(f"Message from {hints.describe()} rejected: {exc.message}")
            raise
        except Exception as exc:
            parse_failure = exc

        metrics.record_message_received(source.value)
        message_id = self._record_pending(source, wire_format, raw_text, metric_code, received_at)

        if isinstance(parse_failure, ParseError):
            self._mark_failed(message_id, parse_failure.message)
            metrics.record_message_failed(
                "no_valid_data" if isinstance(parse_failure, NoValidData) else "parse_error"
            )
            logger.warning(f"Message {message_id} from {hints.describe()} rejected: {parse_failure.message}")
            raise parse_failure
        if parse_failure is not None:
            self._mark_failed(message_id, f"Parser error: {parse_failure}")
            metrics.record_message_failed("parser_crash")
            logger.error(f"Parser crashed on message {message_id}: {parse_failure}", exc_info=parse_failure)
            raise IngestError() from parse_failure

        db = self.session_factory()
        try:
            try:
                identity = self.resolver.resolve(db, hints)
            except DeviceNotFound:
                db.rollback()
                self._mark_failed(message_id, f"Device not found: {hints.describe()}")
                metrics.record_message_failed("device_not_found")
                raise

            reading_count = self._persist(db, message_id, identity, parsed, captured_at, received_at)
            db.commit()
        except IngestError:
            raise
        except Exception as exc:
            db.rollback()
            logger.error(f"Failed to persist message {message_id}: {exc}", exc_info=True)
            self._mark_failed(message_id, str(exc))
            metrics.record_message_failed("persistence")
            raise PersistenceError() from exc
        finally:
            db.close()

        metrics.record_message_parsed(source.value, reading_count, identity.is_partial)
        metrics.record_processing_time((time.monotonic() - started) * 1000)
        logger.info(
            f"Ingested message {message_id} from {hints.describe()} via {source.value}: "
            f"{reading_count} readings ({parsed.wire_format.value})"
            + (" [assignment pending]" if identity.is_partial else "")
        )

        if reading_count and self.alert_hook is not None:
            try:
                self.alert_hook(message_id)
            except Exception as exc:
                metrics.record_alert_evaluation_error()
                logger.error(f"Alert hand-off failed for message {message_id}: {exc}", exc_info=True)

        return IngestResult(
            message_id=message_id,
            reading_count=reading_count,
            received_at=received_at,
            assignment_pending=identity.is_partial,
            values=parsed.as_dict(),
        )

    def _validate(self, hints: IdentityHints, raw_text: str) -> None:
        if not hints.has_identifier():
            raise IngestValidationError("Missing device identifier")
        size = len((raw_text or "").encode("utf-8"))
        if size > settings.max_payload_bytes:
            raise IngestValidationError(
                f"Payload too large ({size} bytes, limit: {settings.max_payload_bytes})"
            )

    def _record_pending(
        self,
        source: MessageSource,
        wire_format: WireFormat,
        raw_text: str,
        metric_code: Optional[str],
        received_at: datetime,
    ) -> int:
        db = self.session_factory()
        try:
            message = InboundMessage(
                source=source,
                wire_format=wire_format.value,
                raw_text=raw_text or "",
                metric_code=metric_code,
                parse_status=ParseStatus.PENDING,
                received_at=received_at,
            )
            db.add(message)
            db.commit()
            return message.id
        except Exception as exc:
            db.rollback()
            logger.error(f"Could not record inbound message: {exc}", exc_info=True)
            raise PersistenceError() from exc
        finally:
            db.close()

    def _mark_failed(self, message_id: int, reason: str) -> None:
        """Best effort; a message that cannot be marked stays pending for reconciliation."""
        db = self.session_factory()
        try:
            db.query(InboundMessage).filter(InboundMessage.id == message_id).update(
                {InboundMessage.parse_status: ParseStatus.FAILED, InboundMessage.parse_error: reason},
                synchronize_session=False,
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.error(f"Could not mark message {message_id} as failed, left pending: {exc}")
        finally:
            db.close()

    def _persist(
        self,
        db: Session,
        message_id: int,
        identity: ResolvedIdentity,
        parsed: ParsedPayload,
        captured_at: datetime,
        received_at: datetime,
    ) -> int:
        message = db.get(InboundMessage, message_id)
        message.tenant_id = identity.tenant_id
        message.device_id = identity.device_id
        message.inventory_id = identity.inventory_id
        message.wire_format = parsed.wire_format.value
        message.parsed_payload = parsed.as_dict()
        message.assignment_pending = identity.is_partial

        reading_count = 0
        if not identity.is_partial:
            for item in parsed.values:
                db.add(TelemetryReading(
                    tenant_id=identity.tenant_id,
                    device_id=identity.device_id,
                    message_id=message_id,
                    variable_code=item.key,
                    value=item.value,
                    captured_at=captured_at,
                ))
                reading_count += 1

        message.parse_status = ParseStatus.PARSED
        db.flush()

        if reading_count:
            # Never move last-seen backwards when requests finish out of order
            db.query(Device).filter(
                Device.id == identity.device_id,
                or_(Device.last_seen_at.is_(None), Device.last_seen_at < received_at),
            ).update({Device.last_seen_at: received_at}, synchronize_session=False)

        return reading_count


def _submit_for_alerting(message_id: int) -> None:
    from telemetry_worker import telemetry_worker

    telemetry_worker.submit(message_id)


ingestion_pipeline = IngestionPipeline(alert_hook=_submit_for_alerting)
