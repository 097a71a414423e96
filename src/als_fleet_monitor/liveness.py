"""Timer-driven liveness sweep.

A device goes offline only here, when it has been silent for longer than
``stale_after`` seconds.  It comes back online only when a message arrives
(see :func:`als_fleet_monitor.state.apply_message`).  There is no hysteresis
beyond the single threshold, so ``stale_after`` must be comfortably larger
than the sweep interval.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Callable, Mapping

from als_fleet_monitor.models import DeviceRecord

if TYPE_CHECKING:
    from als_fleet_monitor.state import FleetState

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 5.0
DEFAULT_STALE_AFTER = 35.0


def sweep_devices(
    devices: Mapping[str, DeviceRecord],
    now: float,
    stale_after: float,
) -> tuple[Mapping[str, DeviceRecord], list[str]]:
    """Flip stale online devices to offline.

    Returns
    -------
    tuple
        ``(devices, flipped_ids)``.  When nothing is stale the input mapping
        is returned as-is; otherwise a new dict.
    """
    flipped = [
        device_id
        for device_id, record in devices.items()
        if record.is_online and now - record.last_seen > stale_after
    ]
    if not flipped:
        return devices, []

    updated = dict(devices)
    for device_id in flipped:
        updated[device_id] = replace(updated[device_id], is_online=False)
    return updated, flipped


class LivenessMonitor:
    """Periodically sweeps a :class:`FleetState` for silent devices.

    Parameters
    ----------
    fleet:
        The fleet state to sweep.
    sweep_interval:
        Seconds between sweeps.
    stale_after:
        Silence, in seconds, after which a device is considered offline.
    clock:
        Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        fleet: "FleetState",
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        stale_after: float = DEFAULT_STALE_AFTER,
        clock: Callable[[], float] = time.time,
        on_offline: Callable[[list[str]], None] | None = None,
    ) -> None:
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be positive")
        if stale_after <= sweep_interval:
            raise ValueError(
                f"stale_after ({stale_after}s) must exceed sweep_interval "
                f"({sweep_interval}s)"
            )
        self._fleet = fleet
        self._sweep_interval = sweep_interval
        self._stale_after = stale_after
        self._clock = clock
        self._on_offline = on_offline
        self._stopped = asyncio.Event()

    def sweep_once(self) -> list[str]:
        """Run one sweep now and return the ids that went offline."""
        flipped = self._fleet.sweep(self._clock(), self._stale_after)
        for device_id in flipped:
            logger.info("Device %s offline (silent > %.0fs)", device_id, self._stale_after)
        if flipped and self._on_offline is not None:
            self._on_offline(flipped)
        return flipped

    async def run(self) -> None:
        """Sweep every ``sweep_interval`` seconds until :meth:`stop`."""
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._sweep_interval)
            except asyncio.TimeoutError:
                self.sweep_once()

    def stop(self) -> None:
        self._stopped.set()
