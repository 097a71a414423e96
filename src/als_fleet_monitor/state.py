"""Device state reducer and the fleet-state owner.

:func:`apply_message` is the single state-transition function for message
arrival.  It is pure: it takes the current ``device id → DeviceRecord``
mapping and returns a new one, leaving the input untouched.  Typed payloads
are replaced wholesale unless the caller opts into
:attr:`UpdatePolicy.MERGE`.

:class:`FleetState` holds the current mapping and is the only place it is
swapped.  Every transition produces a new dict of frozen records, so the
read-only view returned by :meth:`FleetState.snapshot` never changes under
its reader.
"""

from __future__ import annotations

import enum
from dataclasses import fields, replace
from types import MappingProxyType
from typing import Mapping, Optional, TypeVar

from als_fleet_monitor.liveness import sweep_devices
from als_fleet_monitor.models import (
    Accepted,
    DeviceRecord,
    StatusMessage,
    TelemetryMessage,
    UnrecognizedMessage,
)

DEFAULT_HISTORY_LIMIT = 500

_P = TypeVar("_P")


class UpdatePolicy(enum.Enum):
    """How a new typed payload is combined with the previous one."""

    REPLACE = "replace"
    MERGE = "merge"


def apply_message(
    devices: Mapping[str, DeviceRecord],
    message: Accepted,
    now: float,
    history_limit: int = DEFAULT_HISTORY_LIMIT,
    policy: UpdatePolicy = UpdatePolicy.REPLACE,
) -> dict[str, DeviceRecord]:
    """Return the fleet state after *message* arrived at *now*.

    Raises
    ------
    TypeError
        If *message* is not an accepted classification result.
    """
    if not isinstance(message, (TelemetryMessage, StatusMessage, UnrecognizedMessage)):
        raise TypeError(f"Cannot apply {type(message).__name__} to fleet state")

    existing = devices.get(message.device_id)
    if existing is None:
        record = DeviceRecord(
            id=message.device_id,
            is_online=True,
            last_seen=now,
            message_history=(message.envelope,),
        )
    else:
        history = (message.envelope,) + existing.message_history[: history_limit - 1]
        record = replace(existing, is_online=True, last_seen=now, message_history=history)

    if isinstance(message, TelemetryMessage):
        record = replace(
            record,
            latest_telemetry=_combine(record.latest_telemetry, message.payload, policy),
        )
    elif isinstance(message, StatusMessage):
        record = replace(
            record,
            status_info=_combine(record.status_info, message.payload, policy),
        )

    updated = dict(devices)
    updated[record.id] = record
    return updated


def _combine(previous: Optional[_P], new: _P, policy: UpdatePolicy) -> _P:
    if policy is UpdatePolicy.REPLACE or previous is None:
        return new
    present = {
        f.name: getattr(new, f.name)
        for f in fields(new)
        if getattr(new, f.name) is not None
    }
    return replace(previous, **present)


class FleetState:
    """Owner of the current ``device id → DeviceRecord`` mapping.

    Parameters
    ----------
    history_limit:
        Maximum envelopes kept per device, most recent first.
    policy:
        Update policy for typed payloads.
    """

    def __init__(
        self,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        policy: UpdatePolicy = UpdatePolicy.REPLACE,
    ) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self._history_limit = history_limit
        self._policy = policy
        self._devices: dict[str, DeviceRecord] = {}
        self._generation = 0

    @property
    def generation(self) -> int:
        """Incremented on every state change; lets readers skip unchanged state."""
        return self._generation

    def apply(self, message: Accepted, now: float) -> DeviceRecord:
        """Apply an accepted message and return the device's new record."""
        self._devices = apply_message(
            self._devices,
            message,
            now,
            history_limit=self._history_limit,
            policy=self._policy,
        )
        self._generation += 1
        return self._devices[message.device_id]

    def sweep(self, now: float, stale_after: float) -> list[str]:
        """Mark silent devices offline; return the ids that flipped."""
        swept, flipped = sweep_devices(self._devices, now, stale_after)
        if flipped:
            self._devices = swept
            self._generation += 1
        return flipped

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        return self._devices.get(device_id)

    def snapshot(self) -> Mapping[str, DeviceRecord]:
        """Read-only view of the current generation."""
        return MappingProxyType(self._devices)

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices
