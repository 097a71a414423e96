"""The fleet monitor service: wires transport, ingestion core and outputs.

Per inbound message, synchronously on the event loop::

    decode → classify → (rejected: count) → FleetState.apply → dispatch persistence

The liveness sweep and the snapshot writer run as separate tasks on the
same loop, so no two state transitions ever overlap.

The monitor follows the connection state: it is published in the snapshot,
and after a broker refusal (ERROR) a new connect cycle is started every
``broker.error_retry_s`` seconds until the monitor is stopped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from als_fleet_monitor.assignments import AssignmentStore
from als_fleet_monitor.classifier import classify, describe_rejection
from als_fleet_monitor.config import AppConfig
from als_fleet_monitor.connection import ConnectionState, MqttConnection
from als_fleet_monitor.decoder import decode
from als_fleet_monitor.liveness import LivenessMonitor
from als_fleet_monitor.models import Accepted, IngestStats, Rejected
from als_fleet_monitor.persistence import PersistenceDispatcher, Persister
from als_fleet_monitor.snapshot import SnapshotWriter
from als_fleet_monitor.state import FleetState, UpdatePolicy

logger = logging.getLogger(__name__)


class FleetMonitor:
    """Owns the fleet state and everything that reads or writes it.

    Parameters
    ----------
    config:
        Application configuration.
    persister:
        Persistence collaborator, or ``None`` to keep state in memory only.
    assignments:
        Assignment store; defaults to one backed by
        ``config.assignments_path``.
    clock:
        Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        config: AppConfig,
        persister: Optional[Persister] = None,
        assignments: Optional[AssignmentStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._clock = clock
        self._connection: Optional[MqttConnection] = None
        self._stopping = False
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self.connection_state = ConnectionState.DISCONNECTED.value
        self.stats = IngestStats()
        self.fleet = FleetState(
            history_limit=config.state.history_limit,
            policy=UpdatePolicy(config.state.update_policy),
        )
        self.assignments = assignments or AssignmentStore(config.assignments_path or None)
        self.liveness = LivenessMonitor(
            self.fleet,
            sweep_interval=config.liveness.sweep_interval_s,
            stale_after=config.liveness.stale_after_s,
            clock=clock,
            on_offline=self._count_offline,
        )
        self._dispatcher = (
            PersistenceDispatcher(persister, on_failure=self._count_persist_failure)
            if persister is not None
            else None
        )
        self._snapshot = (
            SnapshotWriter(
                config.snapshot.path,
                self.fleet,
                self.assignments,
                interval=config.snapshot.interval_s,
                history_limit=config.snapshot.history_limit,
                clock=clock,
                connection_state=lambda: self.connection_state,
            )
            if config.snapshot.path
            else None
        )

    def ingest(self, topic: str, payload: bytes | str) -> Optional[Accepted]:
        """Process one delivery; return the accepted message or ``None``.

        Persistence is dispatched as a detached task, so when a persister is
        configured this must run on the event loop.
        """
        now = self._clock()
        self.stats.received += 1

        result = classify(decode(topic, payload, received_at=now))
        if isinstance(result, Rejected):
            self.stats.record_rejection(result.reason)
            logger.debug("Rejected %s", describe_rejection(result))
            return None

        self.fleet.apply(result, now)
        self.stats.accepted += 1

        if self._dispatcher is not None:
            self._dispatcher.dispatch(result, self.assignments.get(result.device_id), now)
            self.stats.persist_dispatched += 1
        return result

    async def run(self, connection: MqttConnection, limit: Optional[int] = None) -> None:
        """Consume *connection* until it is stopped (or *limit* messages)."""
        tasks = [asyncio.create_task(self.liveness.run())]
        if self._snapshot is not None:
            tasks.append(asyncio.create_task(self._snapshot.run()))

        self._connection = connection
        self._stopping = False
        connection.add_state_listener(self._on_connection_state)
        connection.start()
        try:
            async for topic, payload in connection.messages():
                self.ingest(topic, payload)
                if limit is not None and self.stats.received >= limit:
                    logger.info("Message limit reached (%d)", limit)
                    break
        finally:
            self._stopping = True
            self._cancel_restart()
            self.liveness.stop()
            if self._snapshot is not None:
                self._snapshot.stop()
            connection.stop()
            for outcome in await asyncio.gather(*tasks, return_exceptions=True):
                if isinstance(outcome, Exception):
                    logger.error("Background task failed: %r", outcome)
            if self._dispatcher is not None:
                await self._dispatcher.close()
            if self._snapshot is not None:
                self._snapshot.write_if_changed()
            s = self.stats
            logger.info(
                "Monitor shut down (received=%d accepted=%d rejected=%d "
                "persist_failures=%d devices=%d)",
                s.received,
                s.accepted,
                s.rejected_total,
                s.persist_failures,
                len(self.fleet),
            )

    def stop(self) -> None:
        """Stop the connection; :meth:`run` then winds down and returns."""
        self._stopping = True
        self._cancel_restart()
        if self._connection is not None:
            self._connection.stop()

    # ── callbacks ───────────────────────────────────────────────────

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState) -> None:
        self.connection_state = new.value
        if new is not ConnectionState.ERROR or self._stopping:
            return
        delay = self._config.broker.error_retry_s
        logger.error("Broker refused the connection; retrying in %.1fs", delay)
        self._cancel_restart()
        self._restart_handle = asyncio.get_running_loop().call_later(delay, self._restart)

    def _restart(self) -> None:
        self._restart_handle = None
        conn = self._connection
        if self._stopping or conn is None or conn.state is not ConnectionState.ERROR:
            return
        self.stats.connection_restarts += 1
        conn.start()

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    def _count_offline(self, device_ids: list[str]) -> None:
        self.stats.went_offline += len(device_ids)

    def _count_persist_failure(self, device_id: str, exc: BaseException) -> None:
        self.stats.persist_failures += 1
