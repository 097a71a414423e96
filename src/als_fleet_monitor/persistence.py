"""Forwarding of accepted messages to the persistence collaborator.

The in-memory fleet state is the source of truth for the live view; the
persistence store is an append/upsert sink that the monitor never reads
back.  Each accepted message therefore becomes one detached asyncio task
that performs, in order::

    upsert_device  → insert_message  → insert_telemetry | insert_status

A failing or hung write only affects its own task: it is logged and
counted, never retried, and never delays the next message.  On shutdown
outstanding tasks are cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol, Union

from als_fleet_monitor.models import (
    Accepted,
    Assignment,
    StatusMessage,
    TelemetryMessage,
)
from als_fleet_monitor.output import FileSink, StdoutSink
from als_fleet_monitor.projection import iso_timestamp

logger = logging.getLogger(__name__)


class Persister(Protocol):
    """Write API of the persistence collaborator."""

    async def upsert_device(self, row: dict[str, Any]) -> None: ...

    async def insert_message(self, row: dict[str, Any]) -> None: ...

    async def insert_telemetry(self, row: dict[str, Any]) -> None: ...

    async def insert_status(self, row: dict[str, Any]) -> None: ...


# ── row builders ────────────────────────────────────────────────────


def device_row(device_id: str, assignment: Assignment, now: float) -> dict[str, Any]:
    return {
        "id": device_id,
        "display_name": assignment.display_name,
        "customer_id": assignment.customer_id,
        "is_online": True,
        "last_seen": iso_timestamp(now),
    }


def message_row(message: Accepted, now: float) -> dict[str, Any]:
    envelope = message.envelope
    return {
        "device_id": message.device_id,
        "topic": envelope.topic,
        "payload": envelope.payload,
        "timestamp": iso_timestamp(now),
    }


def telemetry_row(message: TelemetryMessage, now: float) -> dict[str, Any]:
    p = message.payload
    return {
        "device_id": message.device_id,
        "tds": p.tds,
        "temp": p.temp,
        "flow_clean": p.flow_clean,
        "flow_waste": p.flow_waste,
        "total_clean_litres": p.total_clean_litres,
        "total_waste_litres": p.total_waste_litres,
        "fw": p.fw,
        "timestamp": p.ts or iso_timestamp(now),
    }


def status_row(message: StatusMessage, now: float) -> dict[str, Any]:
    p = message.payload
    return {
        "device_id": message.device_id,
        "event": p.event,
        "fw": p.fw,
        "ip": p.ip,
        "rssi": p.rssi,
        "uptime_ms": p.uptime_ms,
        "interval_ms": p.interval_ms,
        "status": p.status,
        "timestamp": p.ts or iso_timestamp(now),
    }


# ── dispatcher ──────────────────────────────────────────────────────


class PersistenceDispatcher:
    """Fire-and-forget forwarding of accepted messages.

    Parameters
    ----------
    persister:
        The collaborator receiving the writes.
    on_failure:
        Called (on the event loop) once per failed message.
    """

    def __init__(
        self,
        persister: Persister,
        on_failure: Optional[Callable[[str, BaseException], None]] = None,
    ) -> None:
        self._persister = persister
        self._on_failure = on_failure
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, message: Accepted, assignment: Assignment, now: float) -> asyncio.Task:
        """Schedule the writes for *message* and return immediately.

        Must be called from a running event loop.  The rows are built
        before returning so later state changes cannot leak into them.
        """
        writes: list[tuple[str, Callable, dict[str, Any]]] = [
            ("devices", self._persister.upsert_device, device_row(message.device_id, assignment, now)),
            ("mqtt_messages", self._persister.insert_message, message_row(message, now)),
        ]
        if isinstance(message, TelemetryMessage):
            writes.append(("telemetry_data", self._persister.insert_telemetry, telemetry_row(message, now)))
        elif isinstance(message, StatusMessage):
            writes.append(("status_data", self._persister.insert_status, status_row(message, now)))

        task = asyncio.get_running_loop().create_task(self._forward(message.device_id, writes))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        """Cancel outstanding writes; delivery on shutdown is at-most-once."""
        if not self._tasks:
            return
        logger.info("Cancelling %d pending persistence writes", len(self._tasks))
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _forward(self, device_id: str, writes: list) -> None:
        for table, write, row in writes:
            try:
                await write(row)
            except Exception as exc:
                logger.warning(
                    "Persistence write to %s failed for device %s: %s",
                    table,
                    device_id,
                    exc,
                )
                if self._on_failure is not None:
                    self._on_failure(device_id, exc)
                return


# ── NDJSON collaborator ─────────────────────────────────────────────


class NdjsonPersister:
    """:class:`Persister` that records every write as an NDJSON line.

    Each line is ``{"table": ..., "op": "upsert"|"insert", "row": {...}}``,
    ready to be bulk-loaded into the dashboard database.
    """

    def __init__(self, sink: Union[FileSink, StdoutSink]) -> None:
        self._sink = sink

    async def upsert_device(self, row: dict[str, Any]) -> None:
        self._sink.write({"table": "devices", "op": "upsert", "row": row})

    async def insert_message(self, row: dict[str, Any]) -> None:
        self._sink.write({"table": "mqtt_messages", "op": "insert", "row": row})

    async def insert_telemetry(self, row: dict[str, Any]) -> None:
        self._sink.write({"table": "telemetry_data", "op": "insert", "row": row})

    async def insert_status(self, row: dict[str, Any]) -> None:
        self._sink.write({"table": "status_data", "op": "insert", "row": row})

    def close(self) -> None:
        self._sink.close()
