"""Periodic export of the read model to a JSON file.

Consumers (the dashboard UI, ad-hoc scripts) read the file instead of
talking to the monitor.  It is written to ``<path>.tmp`` and moved into
place with ``os.replace`` so readers never see a partial document.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

import orjson

from als_fleet_monitor.assignments import AssignmentStore
from als_fleet_monitor.projection import device_list, iso_timestamp, to_dict
from als_fleet_monitor.state import FleetState

logger = logging.getLogger(__name__)


class SnapshotWriter:
    """Write the sorted device list every ``interval`` seconds when it changed.

    *connection_state* reports the broker connection state for the
    ``connection`` member; a change of state also triggers a write.
    """

    def __init__(
        self,
        path: str | Path,
        fleet: FleetState,
        assignments: AssignmentStore,
        interval: float = 5.0,
        history_limit: int = 50,
        clock: Callable[[], float] = time.time,
        connection_state: Optional[Callable[[], str]] = None,
    ) -> None:
        self._path = Path(path)
        self._fleet = fleet
        self._assignments = assignments
        self._interval = max(1.0, interval)
        self._history_limit = history_limit
        self._clock = clock
        self._connection_state = connection_state or (lambda: "DISCONNECTED")
        self._written_generation = -1
        self._written_connection: Optional[str] = None
        self._stopped = asyncio.Event()

    def render(self, connection: Optional[str] = None) -> bytes:
        views = device_list(self._fleet.snapshot(), self._assignments.current)
        document = {
            "generated_at": iso_timestamp(self._clock()),
            "connection": connection or self._connection_state(),
            "devices": [to_dict(v, history_limit=self._history_limit) for v in views],
        }
        return orjson.dumps(document, option=orjson.OPT_INDENT_2)

    def write_if_changed(self) -> bool:
        """Write the snapshot if fleet state, assignments or the connection changed."""
        reloaded = self._assignments.refresh()
        generation = self._fleet.generation
        connection = self._connection_state()
        if (
            generation == self._written_generation
            and connection == self._written_connection
            and not reloaded
        ):
            return False

        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(self.render(connection))
            os.replace(tmp_path, self._path)
        except OSError as exc:
            logger.error("Failed to write snapshot %s: %s", self._path, exc)
            return False

        self._written_generation = generation
        self._written_connection = connection
        logger.debug("Wrote snapshot of %d devices to %s", len(self._fleet), self._path)
        return True

    async def run(self) -> None:
        while not self._stopped.is_set():
            self.write_if_changed()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()
