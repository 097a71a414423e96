"""Read-model projection over fleet state.

Everything here is derived: device records are joined with the externally
owned assignments (display name, customer) and sorted or filtered for
consumers.  Nothing in this module mutates fleet state.

Device list pipeline (evaluated in order)::

    1. role == "customer" and a customer is selected → keep that customer's devices
    2. sort by label (display name, else id), locale-aware, case-insensitive
    3. query non-empty → keep devices whose label or id contains it
"""

from __future__ import annotations

import locale
import unicodedata
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from als_fleet_monitor.models import Assignment, DeviceRecord, DeviceView, Envelope

ROLE_ADMIN = "admin"
ROLE_CUSTOMER = "customer"

_NO_ASSIGNMENT = Assignment()


def augment(
    devices: Mapping[str, DeviceRecord],
    assignments: Mapping[str, Assignment],
) -> list[DeviceView]:
    """Join every device with its assignment (unsorted)."""
    return [
        _view(record, assignments.get(device_id, _NO_ASSIGNMENT))
        for device_id, record in devices.items()
    ]


def device_list(
    devices: Mapping[str, DeviceRecord],
    assignments: Mapping[str, Assignment],
    role: str = ROLE_ADMIN,
    customer_id: Optional[str] = None,
    query: str = "",
) -> list[DeviceView]:
    """Role-filtered, sorted and optionally searched device list."""
    views: Iterable[DeviceView] = augment(devices, assignments)
    if role == ROLE_CUSTOMER and customer_id:
        views = [v for v in views if v.customer_id == customer_id]

    ordered = sorted(views, key=_sort_key)

    needle = query.strip().casefold()
    if needle:
        ordered = [
            v for v in ordered
            if needle in v.label.casefold() or needle in v.id.casefold()
        ]
    return ordered


def device_view(
    devices: Mapping[str, DeviceRecord],
    assignments: Mapping[str, Assignment],
    device_id: str,
) -> Optional[DeviceView]:
    """Single augmented device, or ``None`` if it has never reported."""
    record = devices.get(device_id)
    if record is None:
        return None
    return _view(record, assignments.get(device_id, _NO_ASSIGNMENT))


def filter_history(view: DeviceView, topic_query: str = "") -> list[Envelope]:
    """Message history entries whose topic contains *topic_query*."""
    needle = topic_query.casefold()
    return [e for e in view.record.message_history if needle in e.topic.casefold()]


def to_dict(view: DeviceView, history_limit: Optional[int] = None) -> dict[str, Any]:
    """JSON-ready representation of *view* (ISO-8601 timestamps)."""
    record = view.record
    history = record.message_history
    if history_limit is not None:
        history = history[:history_limit]

    return {
        "id": record.id,
        "display_name": view.display_name,
        "customer_id": view.customer_id,
        "is_online": record.is_online,
        "last_seen": iso_timestamp(record.last_seen),
        "latest_telemetry": _payload_dict(record.latest_telemetry),
        "status_info": _payload_dict(record.status_info),
        "message_history": [
            {
                "id": e.id,
                "topic": e.topic,
                "payload": e.payload,
                "received_at": iso_timestamp(e.received_at),
            }
            for e in history
        ],
    }


def iso_timestamp(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


# ── helpers ─────────────────────────────────────────────────────────


def _view(record: DeviceRecord, assignment: Assignment) -> DeviceView:
    return DeviceView(
        record=record,
        display_name=assignment.display_name,
        customer_id=assignment.customer_id,
    )


def _fold(text: str) -> str:
    """Casefold and strip combining marks: ``Çamlık`` collates as ``camlık``."""
    decomposed = unicodedata.normalize("NFKD", text.casefold())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def _sort_key(view: DeviceView) -> tuple[str, str, str]:
    # strxfrm follows LC_COLLATE when the CLI has set it; the folded form
    # keeps accented labels beside their base letter in the C locale.
    label = view.label
    return (locale.strxfrm(_fold(label)), locale.strxfrm(label.casefold()), view.id)


def _payload_dict(payload: Any) -> dict[str, Any]:
    if payload is None:
        return {}
    return {k: v for k, v in vars(payload).items() if v is not None}
