import json
from datetime import datetime, timezone

from history_relay.core.usecases.events import build_source_ref, parse_event, parse_timestamp

BASE = "http://ingest.local:8081/"


def test_parse_valid_event_derives_source_ref_and_timestamp():
    raw = json.dumps({"id": "42", "result": {"decision": True}, "timestamp": "2024-01-01T00:00:00Z"}).encode()
    parsed = parse_event(raw, source_base_url=BASE)
    assert parsed.ok, parsed.error
    entry = parsed.entry
    assert entry.id == "42"
    assert entry.result == {"decision": True}
    assert entry.prompt is None
    assert entry.source_ref == "http://ingest.local:8081/pdf/42"
    assert entry.timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_parse_ignores_producer_supplied_source_ref():
    raw = json.dumps({"id": 7, "pdfUrl": "http://elsewhere/x", "result": None})
    parsed = parse_event(raw, source_base_url=BASE)
    assert parsed.ok
    assert parsed.entry.id == "7"
    assert parsed.entry.source_ref == "http://ingest.local:8081/pdf/7"


def test_parse_collects_result_bearing_fields_when_result_key_missing():
    raw = json.dumps({"id": "a1", "prompt": "Is it an invoice?", "label": "invoice", "score": 0.93})
    parsed = parse_event(raw, source_base_url=BASE)
    assert parsed.ok
    assert parsed.entry.prompt == "Is it an invoice?"
    assert parsed.entry.result == {"label": "invoice", "score": 0.93}


def test_parse_rejects_garbage():
    assert parse_event(b"\xff\xfe not utf8", source_base_url=BASE).error == "invalid_encoding"
    assert parse_event("{not json", source_base_url=BASE).error == "invalid_json"
    assert parse_event("[1, 2]", source_base_url=BASE).error == "not_an_object"
    assert parse_event('{"result": {}}', source_base_url=BASE).error == "missing_id"
    assert parse_event('{"id": "  "}', source_base_url=BASE).error == "missing_id"
    assert parse_event('{"id": true}', source_base_url=BASE).error == "missing_id"
    assert parse_event(None, source_base_url=BASE).error == "empty_payload"


def test_parse_timestamp_fallbacks():
    fallback = datetime(2030, 5, 5, tzinfo=timezone.utc)
    assert parse_timestamp(None, default=fallback) == fallback
    assert parse_timestamp("yesterday", default=fallback) == fallback
    assert parse_timestamp(0, default=fallback) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(1_704_067_200_000, default=fallback) == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("2024-01-01T02:00:00+02:00") == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("2024-01-01T00:00:00").tzinfo is not None


def test_missing_timestamp_uses_receive_time():
    received = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    parsed = parse_event('{"id": "x"}', source_base_url=BASE, received_at=received)
    assert parsed.entry.timestamp == received


def test_build_source_ref_handles_trailing_slash():
    assert build_source_ref("9", source_base_url="http://h/") == "http://h/pdf/9"
    assert build_source_ref("9", source_base_url="http://h") == "http://h/pdf/9"


def test_out_of_range_offset_timestamp_falls_back():
    fallback = datetime(2030, 5, 5, tzinfo=timezone.utc)
    assert parse_timestamp("0001-01-01T00:00:00+01:00", default=fallback) == fallback
    assert parse_timestamp("9999-12-31T23:30:00-01:00", default=fallback) == fallback

    raw = '{"id": "x", "timestamp": "0001-01-01T00:00:00+01:00"}'
    parsed = parse_event(raw, source_base_url=BASE, received_at=fallback)
    assert parsed.ok
    assert parsed.entry.timestamp == fallback


def test_parse_rejects_non_finite_numbers():
    assert parse_event('{"id": "n1", "result": {"score": NaN}}', source_base_url=BASE).error == "non_finite_number"
    assert parse_event('{"id": "n2", "result": {"score": -Infinity}}', source_base_url=BASE).error == "non_finite_number"
    assert parse_event('{"id": "n3", "result": {"score": 1e400}}', source_base_url=BASE).error == "non_finite_number"
    assert parse_event('{"id": "n4", "result": {"score": 1e-3}}', source_base_url=BASE).ok
