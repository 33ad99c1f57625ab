from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from config import settings
from connectivity import to_utc
from database import SessionLocal
from error_handler import DeviceNotFound, IngestError, IngestValidationError, NoValidData, PersistenceError
from identity_resolver import IdentityHints
from ingestion_pipeline import IngestionPipeline
from models import Device, InboundMessage, MessageSource, ParseStatus, TelemetryReading
from parsers.wire_formats import WireFormat


def _messages():
    with SessionLocal() as db:
        return db.query(InboundMessage).order_by(InboundMessage.id).all()


def test_ingest_writes_readings_and_updates_last_seen(seed, ingest):
    received_at = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)

    result = ingest({"W": 15, "WP": 30}, received_at=received_at)

    assert result.reading_count == 2
    assert result.values == {"W": 15.0, "WP": 30.0}
    assert not result.assignment_pending
    with SessionLocal() as db:
        message = db.get(InboundMessage, result.message_id)
        readings = db.query(TelemetryReading).filter(TelemetryReading.message_id == message.id).all()
        device = db.get(Device, seed.device_id)

    assert message.parse_status == ParseStatus.PARSED
    assert message.device_id == seed.device_id
    assert message.tenant_id == seed.tenant_id
    assert message.parsed_payload == {"W": 15.0, "WP": 30.0}
    assert sorted((r.variable_code, r.value) for r in readings) == [("W", 15.0), ("WP", 30.0)]
    assert all(r.tenant_id == seed.tenant_id for r in readings)
    assert to_utc(device.last_seen_at) == received_at


def test_last_seen_never_moves_backwards(seed, ingest):
    later = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)

    ingest({"WP": 30}, received_at=later)
    ingest({"WP": 31}, received_at=later - timedelta(hours=2))

    with SessionLocal() as db:
        device = db.get(Device, seed.device_id)
    assert to_utc(device.last_seen_at) == later


def test_missing_identifier_writes_nothing(seed, pipeline):
    with pytest.raises(IngestValidationError):
        pipeline.ingest({"W": 1}, WireFormat.STRUCTURED, MessageSource.HTTP, IdentityHints(), raw_text="{}")

    assert _messages() == []


def test_oversized_payload_writes_nothing(seed, pipeline, monkeypatch):
    monkeypatch.setattr(settings, "max_payload_bytes", 10)

    with pytest.raises(IngestValidationError, match="Payload too large"):
        pipeline.ingest(
            "W=1 X=2 Y=3 Z=4",
            WireFormat.INLINE_KV,
            MessageSource.SMS,
            IdentityHints(serial_number="WAT-001"),
            raw_text="W=1 X=2 Y=3 Z=4",
        )

    assert _messages() == []


def test_too_many_variables_writes_nothing(seed, monkeypatch):
    monkeypatch.setattr(settings, "max_variables_per_message", 2)
    pipeline = IngestionPipeline(alert_hook=None)

    with pytest.raises(IngestValidationError, match="Too many variables"):
        pipeline.ingest(
            "A=1 B=2 C=3",
            WireFormat.INLINE_KV,
            MessageSource.SMS,
            IdentityHints(serial_number="WAT-001"),
            raw_text="A=1 B=2 C=3",
        )

    assert _messages() == []


def test_storage_failure_after_writing_rows_rolls_everything_back(seed, pipeline, ingest, monkeypatch):
    write_rows = pipeline._persist

    def write_rows_then_fail(*args, **kwargs):
        write_rows(*args, **kwargs)
        raise OperationalError("INSERT INTO telemetry_readings", {}, Exception("disk I/O error"))

    monkeypatch.setattr(pipeline, "_persist", write_rows_then_fail)

    with pytest.raises(PersistenceError):
        ingest({"W": 15, "WP": 30})

    [message] = _messages()
    assert message.parse_status == ParseStatus.FAILED
    assert "disk I/O error" in message.parse_error
    with SessionLocal() as db:
        assert db.query(TelemetryReading).count() == 0
        assert db.get(Device, seed.device_id).last_seen_at is None


def test_no_valid_data_marks_message_failed(seed, ingest):
    with pytest.raises(NoValidData):
        ingest({"W": "dry"})

    [message] = _messages()
    assert message.parse_status == ParseStatus.FAILED
    assert message.parse_error == "No valid data to ingest"
    assert message.raw_text == '{"W": "dry"}'


def test_unknown_device_leaves_a_failed_record_each_time(seed, ingest):
    for _ in range(2):
        with pytest.raises(DeviceNotFound):
            ingest({"W": 15}, serial="GHOST-1")

    messages = _messages()
    assert len(messages) == 2
    assert all(m.parse_status == ParseStatus.FAILED for m in messages)
    assert all(m.parse_error == "Device not found: GHOST-1" for m in messages)
    with SessionLocal() as db:
        assert db.query(TelemetryReading).count() == 0


def test_unassigned_unit_is_kept_without_readings(seed):
    calls = []
    pipeline = IngestionPipeline(alert_hook=calls.append)

    result = pipeline.ingest(
        {"W": 15},
        WireFormat.STRUCTURED,
        MessageSource.HTTP,
        IdentityHints(serial_number="WAT-002", tenant_hint="other"),
        raw_text='{"W": 15}',
    )

    assert result.assignment_pending
    assert result.reading_count == 0
    assert calls == []
    [message] = _messages()
    assert message.parse_status == ParseStatus.PARSED
    assert message.assignment_pending
    assert message.tenant_id == seed.other_tenant_id
    assert message.inventory_id == seed.spare_inventory_id
    assert message.parsed_payload == {"W": 15.0}


def test_parser_crash_is_recorded(seed):
    class BrokenParser:
        def parse(self, wire_format, payload):
            raise RuntimeError("boom")

    pipeline = IngestionPipeline(parser=BrokenParser(), alert_hook=None)

    with pytest.raises(IngestError):
        pipeline.ingest(
            {"W": 1}, WireFormat.STRUCTURED, MessageSource.HTTP,
            IdentityHints(serial_number="WAT-001"), raw_text='{"W": 1}',
        )

    [message] = _messages()
    assert message.parse_status == ParseStatus.FAILED
    assert message.parse_error == "Parser error: boom"


def test_alert_hook_receives_message_id(seed, ingest):
    calls = []
    pipeline = IngestionPipeline(alert_hook=calls.append)

    result = ingest({"W": 15}, target=pipeline)

    assert calls == [result.message_id]


def test_alert_hook_failure_does_not_fail_ingestion(seed, ingest):
    def failing_hook(message_id):
        raise RuntimeError("queue unavailable")

    pipeline = IngestionPipeline(alert_hook=failing_hook)

    result = ingest({"W": 15}, target=pipeline)

    assert result.reading_count == 1
    [message] = _messages()
    assert message.parse_status == ParseStatus.PARSED


def test_client_timestamp_only_used_when_trusted(seed, pipeline, monkeypatch):
    client_time = datetime(2026, 1, 1, tzinfo=timezone.utc)
    received_at = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)

    def run():
        return pipeline.ingest(
            {"WP": 1}, WireFormat.STRUCTURED, MessageSource.HTTP,
            IdentityHints(serial_number="WAT-001"), raw_text="{}",
            client_timestamp=client_time, received_at=received_at,
        )

    untrusted = run()
    monkeypatch.setattr(settings, "trust_client_timestamps", True)
    trusted = run()

    with SessionLocal() as db:
        first = db.query(TelemetryReading).filter(TelemetryReading.message_id == untrusted.message_id).one()
        second = db.query(TelemetryReading).filter(TelemetryReading.message_id == trusted.message_id).one()
    assert to_utc(first.captured_at) == received_at
    assert to_utc(second.captured_at) == client_time
