"""Telemetry ingestion endpoints.

Paths and response shapes are fixed by device firmware in the field:
JSON bodies, query-string sweeps, and the plaintext legacy gateway form.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import parse_qsl

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from config import settings
from error_handler import DeviceNotFound, IngestError, IngestValidationError, NoValidData, RateLimitExceeded
from identity_resolver import IdentityHints
from ingestion_pipeline import IngestResult, ingestion_pipeline
from metrics import metrics
from models import MessageSource
from parsers.wire_formats import QUERY_EXCLUDED_PARAMS, WireFormat, select_format
from rate_limiter import rate_limiter

logger = logging.getLogger(__name__)

router = APIRouter()


class IngestRequest(BaseModel):
    """JSON ingestion body."""
    tenantDeviceId: Optional[Union[int, str]] = None
    serialNumber: Optional[str] = None
    legacyDeviceId: Optional[Union[int, str]] = None
    tenantId: Optional[Union[int, str]] = None
    source: str = "http"
    rawText: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    format: Optional[str] = None
    timestamp: Optional[datetime] = None


def _error_response(exc: IngestError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def _success_response(result: IngestResult) -> Dict[str, Any]:
    return {
        "success": True,
        "message": f"Ingested {result.reading_count} readings",
        "messageId": str(result.message_id),
        "timestamp": result.received_at.isoformat(),
    }


def _check_rate_limit(identifier: str) -> None:
    is_allowed, reason = rate_limiter.is_allowed(identifier)
    if not is_allowed:
        metrics.record_rate_limit_hit(identifier)
        raise RateLimitExceeded(reason)


def _source(value: Optional[str]) -> MessageSource:
    try:
        return MessageSource((value or "http").lower())
    except ValueError:
        raise IngestValidationError(f"Invalid source: {value}")


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _json_payload(req: IngestRequest) -> Tuple[WireFormat, Any]:
    wire_format = select_format(data=req.data, raw_text=req.rawText, declared=req.format)
    if wire_format == WireFormat.STRUCTURED:
        if not req.data:
            raise IngestValidationError("Structured format requires a data object")
        return wire_format, req.data
    if not req.rawText:
        raise IngestValidationError(f"Format {wire_format.value} requires rawText")
    if wire_format == WireFormat.QUERY_SWEEP:
        return wire_format, parse_qsl(req.rawText, keep_blank_values=True)
    return wire_format, req.rawText


@router.post("")
async def ingest_json(request: Request):
    """
    JSON ingestion.

    Body: {tenantDeviceId?, serialNumber?, legacyDeviceId?, tenantId?, source?, rawText?, data?, format?}
    """
    try:
        body = await request.body()
        if len(body) > settings.max_payload_bytes:
            raise IngestValidationError(f"Payload too large (limit: {settings.max_payload_bytes} bytes)")
        try:
            document = json.loads(body or b"null")
        except ValueError:
            raise IngestValidationError("Invalid JSON body")
        if not isinstance(document, dict):
            raise IngestValidationError("Request body must be a JSON object")
        try:
            req = IngestRequest.model_validate(document)
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ()))
            raise IngestValidationError(f"Invalid {field}: {first.get('msg')}")

        hints = IdentityHints(
            device_ref=_as_text(req.tenantDeviceId),
            serial_number=_as_text(req.serialNumber),
            legacy_device_id=_as_text(req.legacyDeviceId),
            tenant_hint=_as_text(req.tenantId),
        )
        if not hints.has_identifier():
            raise IngestValidationError("Must provide tenantDeviceId, serialNumber, or legacyDeviceId")
        if not req.data and not req.rawText:
            raise IngestValidationError("Must provide data object or rawText to parse")

        source = _source(req.source)
        wire_format, payload = _json_payload(req)
        _check_rate_limit(hints.describe())

        result = await run_in_threadpool(
            ingestion_pipeline.ingest,
            payload,
            wire_format,
            source,
            hints,
            body.decode("utf-8", errors="replace"),
            None,
            req.timestamp,
        )
        return _success_response(result)
    except IngestError as exc:
        return _error_response(exc)
    except Exception as exc:
        logger.error(f"Error ingesting data: {exc}", exc_info=True)
        return _error_response(IngestError())


@router.get("")
async def ingest_query(request: Request):
    """
    Query-string ingestion: ?serial=WAT-001&W=15&WP=30

    Every parameter other than serial, serialNumber, legacyDeviceId and source
    is treated as a variable.
    """
    try:
        params: List[Tuple[str, str]] = list(request.query_params.multi_items())
        query = dict(params)
        hints = IdentityHints(
            serial_number=_as_text(query.get("serial") or query.get("serialNumber")),
            legacy_device_id=_as_text(query.get("legacyDeviceId")),
        )
        if not hints.has_identifier():
            raise IngestValidationError("Missing serial or legacyDeviceId parameter")
        if not any(key not in QUERY_EXCLUDED_PARAMS for key, _ in params):
            raise IngestValidationError("No data parameters provided")

        source = _source(query.get("source"))
        _check_rate_limit(hints.describe())

        result = await run_in_threadpool(
            ingestion_pipeline.ingest,
            params,
            WireFormat.QUERY_SWEEP,
            source,
            hints,
            request.url.query,
        )
        return _success_response(result)
    except IngestError as exc:
        return _error_response(exc)
    except Exception as exc:
        logger.error(f"Error ingesting data: {exc}", exc_info=True)
        return _error_response(IngestError())


async def _ingest_legacy(params: Dict[str, str], raw_text: str):
    did = _as_text(params.get("DID"))
    temp = _as_text(params.get("temp"))
    hum = _as_text(params.get("hum"))
    if not did:
        return JSONResponse(status_code=400, content={"error": "Missing DID (Device ID) parameter"})
    if not temp:
        return JSONResponse(status_code=400, content={"error": "Missing temp (data) parameter"})

    hints = IdentityHints(serial_number=did, legacy_device_id=did, tenant_hint=_as_text(params.get("CID")))
    try:
        _check_rate_limit(did)
        result = await run_in_threadpool(
            ingestion_pipeline.ingest,
            temp,
            WireFormat.LEGACY_SLASH,
            MessageSource.HTTP,
            hints,
            raw_text,
            hum,
        )
    except DeviceNotFound:
        return JSONResponse(status_code=404, content={"error": f"Device not found: {did}"})
    except NoValidData:
        return JSONResponse(status_code=400, content={"error": "No valid data parsed from temp parameter"})
    except IngestError as exc:
        if exc.status_code >= 500:
            return JSONResponse(status_code=exc.status_code, content={"error": "Error inserting values"})
        return _error_response(exc)
    except Exception as exc:
        logger.error(f"Legacy ingest error: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Error inserting values"})

    lines = [
        f"Value 1 = {temp}",
        f"Value 2 = {hum or ''}",
        "Values stored successfully!",
        "Data inserted successfully into variables table.",
        f"Readings: {result.reading_count}",
    ]
    return HTMLResponse(content="<br/>".join(lines), status_code=200)


@router.get("/legacy")
async def ingest_legacy(request: Request):
    """
    Legacy gateway form: ?temp=T:25.5/H:60&hum=METRIC&CID=tenant&DID=serial

    Success is plaintext for old firmware; errors are JSON.
    """
    return await _ingest_legacy(dict(request.query_params), request.url.query)


@router.post("/legacy")
async def ingest_legacy_post(request: Request):
    """Legacy form with the parameters sent as a JSON object."""
    body = await request.body()
    try:
        document = json.loads(body or b"{}")
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})
    if not isinstance(document, dict):
        return JSONResponse(status_code=400, content={"error": "Request body must be a JSON object"})
    params = {str(key): "" if value is None else str(value) for key, value in document.items()}
    return await _ingest_legacy(params, body.decode("utf-8", errors="replace"))
