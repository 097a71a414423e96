"""Dataclass models for the fleet monitor.

Everything the ingestion core hands around is frozen: envelopes, parsed
payloads, classified messages and device records.  State transitions build
new instances with :func:`dataclasses.replace` instead of mutating.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union


@dataclass(frozen=True)
class Envelope:
    """One decoded inbound broker message (payload not yet parsed)."""

    id: str
    topic: str
    payload: str
    received_at: float


@dataclass(frozen=True)
class TelemetryPayload:
    """Sensor snapshot published on ``<ns>/<device>/tele``."""

    device_id: str
    ts: Optional[str] = None
    tds: Optional[float] = None
    temp: Optional[float] = None
    flow_clean: Optional[float] = None
    flow_waste: Optional[float] = None
    total_clean_litres: Optional[float] = None
    total_waste_litres: Optional[float] = None
    fw: Optional[str] = None


@dataclass(frozen=True)
class StatusPayload:
    """Firmware/network status published on ``<ns>/<device>/stat``."""

    device_id: str
    event: Optional[str] = None
    ts: Optional[str] = None
    fw: Optional[str] = None
    ip: Optional[str] = None
    rssi: Optional[int] = None
    uptime_ms: Optional[int] = None
    interval_ms: Optional[int] = None
    status: Optional[str] = None


# ── classification results ──────────────────────────────────────────


@dataclass(frozen=True)
class TelemetryMessage:
    envelope: Envelope
    device_id: str
    payload: TelemetryPayload


@dataclass(frozen=True)
class StatusMessage:
    envelope: Envelope
    device_id: str
    payload: StatusPayload


@dataclass(frozen=True)
class UnrecognizedMessage:
    """Attributable to a device, but the topic kind is not one we parse."""

    envelope: Envelope
    device_id: str
    kind: str


@dataclass(frozen=True)
class Rejected:
    """A message that cannot be attributed to any device."""

    envelope: Envelope
    reason: str
    detail: str = ""


Accepted = Union[TelemetryMessage, StatusMessage, UnrecognizedMessage]
Classified = Union[TelemetryMessage, StatusMessage, UnrecognizedMessage, Rejected]


# ── device state ────────────────────────────────────────────────────


@dataclass(frozen=True)
class DeviceRecord:
    """Authoritative in-memory state for one device.

    ``message_history`` is most-recent-first and bounded by the reducer's
    history limit.
    """

    id: str
    is_online: bool = True
    last_seen: float = 0.0
    latest_telemetry: Optional[TelemetryPayload] = None
    status_info: Optional[StatusPayload] = None
    message_history: tuple[Envelope, ...] = ()


@dataclass(frozen=True)
class Assignment:
    """Display name and customer owner, sourced outside the core."""

    display_name: Optional[str] = None
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class DeviceView:
    """A device record joined with its assignment, as consumers see it."""

    record: DeviceRecord
    display_name: Optional[str] = None
    customer_id: Optional[str] = None

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def label(self) -> str:
        return self.display_name or self.record.id


@dataclass
class IngestStats:
    """Counters for the ingestion pipeline."""

    received: int = 0
    accepted: int = 0
    rejected: dict[str, int] = field(default_factory=dict)
    persist_dispatched: int = 0
    persist_failures: int = 0
    went_offline: int = 0
    connection_restarts: int = 0

    def record_rejection(self, reason: str) -> None:
        self.rejected[reason] = self.rejected.get(reason, 0) + 1

    @property
    def rejected_total(self) -> int:
        return sum(self.rejected.values())
