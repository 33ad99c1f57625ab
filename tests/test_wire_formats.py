import pytest

from error_handler import IngestValidationError, NoValidData, ParseError
from parsers.wire_formats import WireFormat, WireFormatParser, select_format


@pytest.fixture
def parser():
    return WireFormatParser(max_variables=100, max_code_length=32)


def test_structured_keeps_numbers_and_numeric_strings(parser):
    result = parser.parse(WireFormat.STRUCTURED, {"w": 15, "wp": "30.5", "flag": True, "note": "low"})

    assert result.as_dict() == {"W": 15.0, "WP": 30.5}
    assert [v.was_coerced for v in result.values] == [False, True]
    assert result.skipped == ["flag", "note"]


def test_structured_rejects_non_object(parser):
    with pytest.raises(ParseError):
        parser.parse(WireFormat.STRUCTURED, "W=1")


def test_legacy_slash_skips_malformed_segments(parser):
    result = parser.parse(WireFormat.LEGACY_SLASH, "T:25.5/H:60/garbage//X:abc")

    assert result.as_dict() == {"T": 25.5, "H": 60.0}
    assert "garbage" in result.skipped


def test_inline_kv_accepts_commas_and_whitespace(parser):
    result = parser.parse(WireFormat.INLINE_KV, "W=1, X=2 y=-3.5")

    assert result.as_dict() == {"W": 1.0, "X": 2.0, "Y": -3.5}


def test_query_sweep_ignores_identity_params(parser):
    params = [("serial", "WAT-001"), ("source", "http"), ("W", "15"), ("WP", "30"), ("bad", "n/a")]

    result = parser.parse(WireFormat.QUERY_SWEEP, params)

    assert result.as_dict() == {"W": 15.0, "WP": 30.0}


def test_repeated_code_keeps_position_and_takes_last_value(parser):
    result = parser.parse(WireFormat.QUERY_SWEEP, [("W", "1"), ("X", "2"), ("w", "3")])

    assert [v.key for v in result.values] == ["W", "X"]
    assert result.as_dict()["W"] == 3.0


def test_non_finite_values_are_dropped(parser):
    with pytest.raises(NoValidData):
        parser.parse(WireFormat.STRUCTURED, {"a": "nan", "b": "inf"})


def test_empty_payload_has_no_valid_data(parser):
    with pytest.raises(NoValidData):
        parser.parse(WireFormat.INLINE_KV, "   ")


def test_variable_limit():
    parser = WireFormatParser(max_variables=2)

    with pytest.raises(IngestValidationError, match="Too many variables"):
        parser.parse(WireFormat.INLINE_KV, "A=1 B=2 C=3")


def test_overlong_codes_are_skipped():
    parser = WireFormatParser(max_code_length=4)

    result = parser.parse(WireFormat.INLINE_KV, "LONGNAME=1 W=2")

    assert result.as_dict() == {"W": 2.0}


def test_select_format():
    assert select_format(data={"W": 1}) == WireFormat.STRUCTURED
    assert select_format(raw_text="W=1") == WireFormat.INLINE_KV
    assert select_format(raw_text="T:1/H:2", declared="legacy_slash") == WireFormat.LEGACY_SLASH
    with pytest.raises(ParseError):
        select_format(raw_text="W=1", declared="binary")
    with pytest.raises(NoValidData):
        select_format()
