"""Tests for the snapshot exporter."""

import asyncio
from pathlib import Path

import orjson

from als_fleet_monitor.assignments import AssignmentStore
from als_fleet_monitor.classifier import classify
from als_fleet_monitor.decoder import decode
from als_fleet_monitor.models import Assignment
from als_fleet_monitor.snapshot import SnapshotWriter
from als_fleet_monitor.state import FleetState

T0 = 1700000000.0


def _apply(fleet: FleetState, device_id: str, at: float = T0) -> None:
    payload = orjson.dumps({"device_id": device_id, "tds": 100})
    fleet.apply(classify(decode(f"als/{device_id}/tele", payload, received_at=at)), at)


def _writer(tmp_path: Path, fleet: FleetState, **kwargs) -> SnapshotWriter:
    store = AssignmentStore.from_mapping({"b": Assignment(display_name="Alpha")})
    return SnapshotWriter(tmp_path / "fleet.json", fleet, store, clock=lambda: T0, **kwargs)


def test_writes_sorted_devices(tmp_path: Path) -> None:
    fleet = FleetState()
    _apply(fleet, "a")
    _apply(fleet, "b")
    writer = _writer(tmp_path, fleet)

    assert writer.write_if_changed() is True
    document = orjson.loads((tmp_path / "fleet.json").read_bytes())
    assert document["generated_at"] == "2023-11-14T22:13:20+00:00"
    assert [d["id"] for d in document["devices"]] == ["a", "b"]
    assert document["devices"][1]["display_name"] == "Alpha"
    assert not (tmp_path / "fleet.json.tmp").exists()


def test_skips_unchanged_generation(tmp_path: Path) -> None:
    fleet = FleetState()
    _apply(fleet, "a")
    writer = _writer(tmp_path, fleet)

    assert writer.write_if_changed() is True
    assert writer.write_if_changed() is False
    _apply(fleet, "a", T0 + 1)
    assert writer.write_if_changed() is True


def test_history_is_capped(tmp_path: Path) -> None:
    fleet = FleetState()
    for i in range(10):
        _apply(fleet, "a", T0 + i)
    writer = _writer(tmp_path, fleet, history_limit=3)
    writer.write_if_changed()

    device = orjson.loads((tmp_path / "fleet.json").read_bytes())["devices"][0]
    assert len(device["message_history"]) == 3


def test_write_failure_is_logged_not_raised(tmp_path: Path, caplog) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    fleet = FleetState()
    _apply(fleet, "a")
    writer = SnapshotWriter(blocker / "fleet.json", fleet, AssignmentStore())

    assert writer.write_if_changed() is False
    assert "Failed to write snapshot" in caplog.text


def test_run_writes_then_stops(tmp_path: Path) -> None:
    fleet = FleetState()
    _apply(fleet, "a")
    writer = _writer(tmp_path, fleet, interval=1)

    async def scenario() -> None:
        task = asyncio.create_task(writer.run())
        await asyncio.sleep(0.05)
        writer.stop()
        await asyncio.wait_for(task, timeout=2)

    asyncio.run(scenario())
    assert (tmp_path / "fleet.json").exists()


def test_connection_state_change_triggers_write(tmp_path: Path) -> None:
    fleet = FleetState()
    _apply(fleet, "a")
    state = {"value": "CONNECTING"}
    writer = _writer(tmp_path, fleet, connection_state=lambda: state["value"])

    assert writer.write_if_changed() is True
    assert writer.write_if_changed() is False
    state["value"] = "ERROR"
    assert writer.write_if_changed() is True
    document = orjson.loads((tmp_path / "fleet.json").read_bytes())
    assert document["connection"] == "ERROR"
