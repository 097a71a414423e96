"""Tests for the classifier module."""

import orjson
import pytest

from als_fleet_monitor.classifier import (
    MAX_RAW_PAYLOAD_BYTES,
    classify,
    describe_rejection,
    topic_kind,
)
from als_fleet_monitor.decoder import decode
from als_fleet_monitor.models import (
    Envelope,
    Rejected,
    StatusMessage,
    TelemetryMessage,
    UnrecognizedMessage,
)


def _envelope(topic: str, data) -> Envelope:
    """Decode *data* (dict → JSON, str/bytes as-is) on *topic*."""
    payload = orjson.dumps(data) if isinstance(data, (dict, list, int)) else data
    return decode(topic, payload, received_at=1700000000.0)


VALID_TELEMETRY = {
    "device_id": "ALS-0042",
    "ts": "2025-02-15T18:32:01Z",
    "tds": 182.5,
    "temp": 21.3,
    "flow_clean": 1.25,
    "flow_waste": 0.4,
    "total_clean_litres": 10234.0,
    "total_waste_litres": 3120.5,
    "fw": "2.4.1",
}

VALID_STATUS = {
    "device_id": "ALS-0042",
    "event": "boot",
    "ts": "2025-02-15T18:30:00Z",
    "fw": "2.4.1",
    "ip": "10.0.0.17",
    "rssi": -61,
    "uptime_ms": 120000,
    "interval_ms": 5000,
    "status": "online",
}


def test_valid_telemetry() -> None:
    """A ``/tele`` frame becomes a TelemetryMessage with every field parsed."""
    result = classify(_envelope("als/ALS-0042/tele", VALID_TELEMETRY))
    assert isinstance(result, TelemetryMessage)
    assert result.device_id == "ALS-0042"
    assert result.payload.tds == 182.5
    assert result.payload.total_waste_litres == 3120.5
    assert result.payload.fw == "2.4.1"


def test_valid_status() -> None:
    """A ``/stat`` frame becomes a StatusMessage."""
    result = classify(_envelope("als/ALS-0042/stat", VALID_STATUS))
    assert isinstance(result, StatusMessage)
    assert result.payload.rssi == -61
    assert result.payload.uptime_ms == 120000
    assert result.payload.status == "online"


def test_invalid_json() -> None:
    """Broken JSON is rejected with ``parse_error``."""
    result = classify(_envelope("als/ALS-0042/tele", "{not valid json!!!"))
    assert isinstance(result, Rejected)
    assert result.reason == "parse_error"


@pytest.mark.parametrize("payload", ["[1, 2]", "42", '"text"', "null"])
def test_non_object_json(payload: str) -> None:
    """Valid JSON that is not an object is ``not_an_object``."""
    result = classify(_envelope("als/ALS-0042/tele", payload))
    assert isinstance(result, Rejected)
    assert result.reason == "not_an_object"


@pytest.mark.parametrize(
    "data",
    [
        {"tds": 1.0},
        {"device_id": None},
        {"device_id": ""},
        {"device_id": "   "},
        {"device_id": True},
        {"device_id": ["a"]},
    ],
)
def test_missing_device_id(data: dict) -> None:
    """No usable ``device_id`` → ``missing_device_id``."""
    result = classify(_envelope("als/ALS-0042/tele", data))
    assert isinstance(result, Rejected)
    assert result.reason == "missing_device_id"


def test_integer_device_id_is_stringified() -> None:
    result = classify(_envelope("als/7/tele", {"device_id": 7}))
    assert isinstance(result, TelemetryMessage)
    assert result.device_id == "7"


def test_device_identified_by_payload_not_topic() -> None:
    """The topic's device segment is ignored."""
    result = classify(_envelope("als/other/tele", {"device_id": "ALS-0042"}))
    assert result.device_id == "ALS-0042"


def test_unrecognized_kind() -> None:
    """Attributable messages on other topic kinds are still accepted."""
    result = classify(_envelope("als/ALS-0042/diag", {"device_id": "ALS-0042"}))
    assert isinstance(result, UnrecognizedMessage)
    assert result.kind == "diag"


def test_command_echo_is_rejected() -> None:
    """Our own plain-text commands on ``/cmd`` are not JSON."""
    result = classify(_envelope("als/ALS-0042/cmd", "REBOOT"))
    assert isinstance(result, Rejected)
    assert result.reason == "parse_error"


def test_wrong_field_types_parse_to_none() -> None:
    """Bad individual fields are nulled; the message is still accepted."""
    data = {
        "device_id": "ALS-0042",
        "tds": "not-a-number",
        "temp": True,
        "flow_clean": {"v": 1},
        "flow_waste": "0.75",
        "fw": 3,
    }
    result = classify(_envelope("als/ALS-0042/tele", data))
    assert isinstance(result, TelemetryMessage)
    assert result.payload.tds is None
    assert result.payload.temp is None
    assert result.payload.flow_clean is None
    assert result.payload.flow_waste == 0.75
    assert result.payload.fw == "3"


def test_status_flag_and_integer_fields() -> None:
    data = {"device_id": "ALS-0042", "status": "OFFLINE", "rssi": -60.5, "uptime_ms": 10.0}
    result = classify(_envelope("als/ALS-0042/stat", data))
    assert result.payload.status == "offline"
    assert result.payload.rssi is None
    assert result.payload.uptime_ms == 10


def test_unknown_status_flag_is_dropped() -> None:
    result = classify(_envelope("als/ALS-0042/stat", {"device_id": "ALS-0042", "status": "sleeping"}))
    assert result.payload.status is None


def test_topic_kind() -> None:
    assert topic_kind("als/dev/tele") == "tele"
    assert topic_kind("als/dev/stat/") == "stat"
    assert topic_kind("tele") == "tele"


def test_describe_rejection_truncates() -> None:
    """Diagnostics never include more than MAX_RAW_PAYLOAD_BYTES of payload."""
    result = classify(_envelope("als/x/tele", "x" * (MAX_RAW_PAYLOAD_BYTES + 500)))
    text = describe_rejection(result)
    assert "parse_error" in text
    assert len(text) < MAX_RAW_PAYLOAD_BYTES + 400
