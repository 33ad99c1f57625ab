"""Parsers for the telemetry wire formats spoken by field devices.

Every format normalizes to an ordered list of (variable code, value) pairs.
Variable codes are uppercased; a repeated code keeps its first position but
takes the last value, the same as assigning into a dict.
"""

import enum
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from error_handler import IngestValidationError, NoValidData, ParseError


logger = logging.getLogger(__name__)


class WireFormat(str, enum.Enum):
    """Supported payload grammars. Each device model uses exactly one."""

    STRUCTURED = "structured"
    LEGACY_SLASH = "legacy_slash"
    INLINE_KV = "inline_kv"
    QUERY_SWEEP = "query_sweep"


# Query parameters that identify the device rather than carry data
QUERY_EXCLUDED_PARAMS = frozenset({"serial", "serialNumber", "legacyDeviceId", "source"})

_NUMBER = r"[-+]?(?:\d+\.?\d*|\.\d+)"
LEGACY_SEGMENT_RE = re.compile(rf"^([A-Za-z][A-Za-z0-9_]*):({_NUMBER})$")
INLINE_TOKEN_RE = re.compile(rf"^([A-Za-z][A-Za-z0-9_]*)=({_NUMBER})$")
INLINE_SPLIT_RE = re.compile(r"[,\s]+")


@dataclass(frozen=True)
class ParsedValue:
    """One extracted pair. ``was_coerced`` marks values parsed from text."""

    key: str
    value: float
    was_coerced: bool = False


@dataclass
class ParsedPayload:
    """Ordered result of parsing one message."""

    wire_format: WireFormat
    values: List[ParsedValue] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, float]:
        return {item.key: item.value for item in self.values}

    def __len__(self) -> int:
        return len(self.values)


def _to_finite_float(raw: Any) -> Optional[float]:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return value


class WireFormatParser:
    """Turns raw transport payloads into ordered variable readings."""

    def __init__(self, max_variables: int = 100, max_code_length: int = 32):
        self.max_variables = max_variables
        self.max_code_length = max_code_length

    def parse(self, wire_format: WireFormat, payload: Any) -> ParsedPayload:
        """Parse ``payload`` with the grammar of ``wire_format``.

        Raises:
            NoValidData: if no valid pair could be extracted.
        """
        if wire_format == WireFormat.STRUCTURED:
            if not isinstance(payload, Mapping):
                raise ParseError("Structured payload must be an object")
            result = self.parse_structured(payload)
        elif wire_format == WireFormat.LEGACY_SLASH:
            result = self.parse_legacy_slash(str(payload))
        elif wire_format == WireFormat.INLINE_KV:
            result = self.parse_inline_kv(str(payload))
        elif wire_format == WireFormat.QUERY_SWEEP:
            items = payload.items() if isinstance(payload, Mapping) else payload
            result = self.parse_query_sweep(items)
        else:
            raise ParseError(f"Unsupported wire format: {wire_format}")

        if not result.values:
            raise NoValidData()
        return result

    def parse_structured(self, data: Mapping[str, Any]) -> ParsedPayload:
        """Already-decoded key -> number-or-string map."""
        pairs = []
        for key, raw in data.items():
            if isinstance(raw, bool):
                value, coerced = None, False
            elif isinstance(raw, (int, float)):
                value, coerced = _to_finite_float(raw), False
            elif isinstance(raw, str):
                value, coerced = _to_finite_float(raw.strip()), True
            else:
                value, coerced = None, False
            if value is None:
                logger.warning(f"Dropping non-numeric value for {key!r}: {raw!r}")
            pairs.append((str(key), value, coerced))
        return self._collect(WireFormat.STRUCTURED, pairs)

    def parse_legacy_slash(self, text: str) -> ParsedPayload:
        """``VAR:VAL/VAR:VAL``; segments that do not match are skipped."""
        pairs = []
        for segment in text.split("/"):
            segment = segment.strip()
            if not segment:
                continue
            match = LEGACY_SEGMENT_RE.match(segment)
            if match:
                pairs.append((match.group(1), _to_finite_float(match.group(2)), True))
            else:
                pairs.append((segment, None, False))
        return self._collect(WireFormat.LEGACY_SLASH, pairs)

    def parse_inline_kv(self, text: str) -> ParsedPayload:
        """``VAR=VAL,VAR=VAL`` or whitespace separated."""
        pairs = []
        for token in INLINE_SPLIT_RE.split(text.strip()):
            if not token:
                continue
            match = INLINE_TOKEN_RE.match(token)
            if match:
                pairs.append((match.group(1), _to_finite_float(match.group(2)), True))
            else:
                pairs.append((token, None, False))
        return self._collect(WireFormat.INLINE_KV, pairs)

    def parse_query_sweep(self, params: Iterable[Tuple[str, str]]) -> ParsedPayload:
        """Every non-reserved query parameter whose value is a number."""
        pairs = []
        for key, raw in params:
            if key in QUERY_EXCLUDED_PARAMS:
                continue
            pairs.append((key, _to_finite_float(raw.strip()) if isinstance(raw, str) else None, True))
        return self._collect(WireFormat.QUERY_SWEEP, pairs)

    def _collect(self, wire_format: WireFormat, pairs: Iterable[Tuple[str, Optional[float], bool]]) -> ParsedPayload:
        values: Dict[str, ParsedValue] = {}
        skipped: List[str] = []
        for key, value, coerced in pairs:
            code = key.strip().upper()
            if value is None or not code or len(code) > self.max_code_length:
                skipped.append(key)
                continue
            if code not in values and len(values) >= self.max_variables:
                raise IngestValidationError(f"Too many variables (limit: {self.max_variables})")
            values[code] = ParsedValue(key=code, value=value, was_coerced=coerced)

        if skipped:
            logger.debug(f"Skipped {len(skipped)} unparsable token(s) in {wire_format.value} payload")
        return ParsedPayload(wire_format=wire_format, values=list(values.values()), skipped=skipped)


def select_format(
    data: Optional[Mapping[str, Any]] = None,
    raw_text: Optional[str] = None,
    declared: Optional[str] = None,
) -> WireFormat:
    """Pick the grammar for a JSON ingest request from the fields it carries."""
    if declared:
        try:
            return WireFormat(declared)
        except ValueError as exc:
            raise ParseError(f"Unknown format: {declared}") from exc
    if data:
        return WireFormat.STRUCTURED
    if raw_text:
        return WireFormat.INLINE_KV
    raise NoValidData()
