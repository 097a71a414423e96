"""Classify decoded envelopes into typed device messages or rejections.

Classification pipeline::

    envelope.payload
      │
      ├─ JSON parse failure        → Rejected(reason="parse_error")
      ├─ not a JSON object         → Rejected(reason="not_an_object")
      ├─ missing/empty device_id   → Rejected(reason="missing_device_id")
      ├─ topic ends in /tele       → TelemetryMessage
      ├─ topic ends in /stat       → StatusMessage
      └─ any other topic kind      → UnrecognizedMessage

The device is identified by the payload's ``device_id``, not by the topic.
Individual fields of the wrong type parse to ``None``; the message is still
accepted.
"""

from __future__ import annotations

import math
from typing import Any, Optional

import orjson

from als_fleet_monitor.models import (
    Classified,
    Envelope,
    Rejected,
    StatusMessage,
    StatusPayload,
    TelemetryMessage,
    TelemetryPayload,
    UnrecognizedMessage,
)

TELEMETRY_KIND = "tele"
STATUS_KIND = "stat"
COMMAND_KIND = "cmd"

# Maximum bytes of raw payload shown in rejection diagnostics.
MAX_RAW_PAYLOAD_BYTES = 4096

_STATUS_FLAGS = ("online", "offline")


def classify(envelope: Envelope) -> Classified:
    """Classify a single envelope.

    Returns
    -------
    TelemetryMessage, StatusMessage or UnrecognizedMessage
        When the payload is a JSON object carrying a ``device_id``.
    Rejected
        When the payload cannot be attributed to a device.  Rejection is
        an expected outcome on a shared topic namespace, never an error.
    """
    # Step 1: parse JSON
    try:
        data = orjson.loads(envelope.payload)
    except orjson.JSONDecodeError as exc:
        return Rejected(envelope=envelope, reason="parse_error", detail=str(exc))

    if not isinstance(data, dict):
        return Rejected(
            envelope=envelope,
            reason="not_an_object",
            detail=f"Expected a JSON object, got {type(data).__name__}",
        )

    # Step 2: require device id
    device_id = _device_id(data.get("device_id"))
    if device_id is None:
        return Rejected(
            envelope=envelope,
            reason="missing_device_id",
            detail="Payload missing required field: device_id",
        )

    # Step 3: dispatch on topic kind
    kind = topic_kind(envelope.topic)
    if kind == TELEMETRY_KIND:
        return TelemetryMessage(
            envelope=envelope,
            device_id=device_id,
            payload=parse_telemetry(device_id, data),
        )
    if kind == STATUS_KIND:
        return StatusMessage(
            envelope=envelope,
            device_id=device_id,
            payload=parse_status(device_id, data),
        )
    return UnrecognizedMessage(envelope=envelope, device_id=device_id, kind=kind)


def topic_kind(topic: str) -> str:
    """Return the last segment of *topic* (``"tele"``, ``"stat"``, ...)."""
    return topic.rstrip("/").rsplit("/", 1)[-1]


def parse_telemetry(device_id: str, data: dict) -> TelemetryPayload:
    """Build a :class:`TelemetryPayload`, nulling fields that do not parse."""
    return TelemetryPayload(
        device_id=device_id,
        ts=_as_str(data.get("ts")),
        tds=_as_float(data.get("tds")),
        temp=_as_float(data.get("temp")),
        flow_clean=_as_float(data.get("flow_clean")),
        flow_waste=_as_float(data.get("flow_waste")),
        total_clean_litres=_as_float(data.get("total_clean_litres")),
        total_waste_litres=_as_float(data.get("total_waste_litres")),
        fw=_as_str(data.get("fw")),
    )


def parse_status(device_id: str, data: dict) -> StatusPayload:
    """Build a :class:`StatusPayload`, nulling fields that do not parse."""
    status = _as_str(data.get("status"))
    if status is not None:
        status = status.lower()
        if status not in _STATUS_FLAGS:
            status = None

    return StatusPayload(
        device_id=device_id,
        event=_as_str(data.get("event")),
        ts=_as_str(data.get("ts")),
        fw=_as_str(data.get("fw")),
        ip=_as_str(data.get("ip")),
        rssi=_as_int(data.get("rssi")),
        uptime_ms=_as_int(data.get("uptime_ms")),
        interval_ms=_as_int(data.get("interval_ms")),
        status=status,
    )


def describe_rejection(rejected: Rejected) -> str:
    """One-line diagnostic for debug logs, with the payload truncated."""
    raw = rejected.envelope.payload
    if len(raw.encode("utf-8")) > MAX_RAW_PAYLOAD_BYTES:
        raw = raw.encode("utf-8")[:MAX_RAW_PAYLOAD_BYTES].decode("utf-8", errors="ignore") + "…"
    return f"{rejected.reason} on {rejected.envelope.topic}: {rejected.detail} ({raw!r})"


# ── field coercion ──────────────────────────────────────────────────


def _device_id(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return result if math.isfinite(result) else None


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None
