"""Tests for the assignment store."""

import os
from pathlib import Path

import orjson
import pytest

from als_fleet_monitor.assignments import (
    AssignmentStore,
    load_assignments,
    parse_assignments,
)
from als_fleet_monitor.models import Assignment

DOCUMENT = {
    "customers": [{"id": "c-1", "name": "Demo Hotel"}],
    "deviceNames": {"ALS-0001": "Lobby unit", "ALS-0002": "  "},
    "assignments": {"ALS-0001": "c-1", "ALS-0003": "c-1"},
}


def _write(path: Path, document, mtime: float) -> None:
    path.write_bytes(orjson.dumps(document))
    os.utime(path, (mtime, mtime))


def test_parse_assignments() -> None:
    result = parse_assignments(DOCUMENT)
    assert result["ALS-0001"] == Assignment(display_name="Lobby unit", customer_id="c-1")
    assert result["ALS-0002"] == Assignment(display_name=None, customer_id=None)
    assert result["ALS-0003"] == Assignment(display_name=None, customer_id="c-1")


@pytest.mark.parametrize("document", [[], {"deviceNames": ["ALS-0001"]}, {"assignments": "c-1"}])
def test_parse_assignments_rejects_bad_shapes(document) -> None:
    with pytest.raises(ValueError):
        parse_assignments(document)


def test_missing_file_is_empty(tmp_path: Path) -> None:
    assert load_assignments(tmp_path / "nope.json") == {}


def test_invalid_json_raises(tmp_path: Path) -> None:
    path = tmp_path / "data.json"
    path.write_text("{broken")
    with pytest.raises(ValueError, match="Invalid assignment file"):
        load_assignments(path)


class TestAssignmentStore:
    """Tests for :class:`AssignmentStore`."""

    def test_loads_on_construction(self, tmp_path: Path) -> None:
        path = tmp_path / "data.json"
        _write(path, DOCUMENT, 1000)
        store = AssignmentStore(path)
        assert store.get("ALS-0001").display_name == "Lobby unit"
        assert store.get("unknown") == Assignment()

    def test_reloads_only_when_mtime_changes(self, tmp_path: Path) -> None:
        path = tmp_path / "data.json"
        _write(path, DOCUMENT, 1000)
        store = AssignmentStore(path)
        assert store.refresh() is False

        _write(path, {"deviceNames": {"ALS-0001": "Renamed"}}, 2000)
        assert store.refresh() is True
        assert store.get("ALS-0001").display_name == "Renamed"

    def test_bad_reload_keeps_previous(self, tmp_path: Path) -> None:
        path = tmp_path / "data.json"
        _write(path, DOCUMENT, 1000)
        store = AssignmentStore(path)

        path.write_text("{broken")
        os.utime(path, (2000, 2000))
        assert store.refresh() is False
        assert store.get("ALS-0001").display_name == "Lobby unit"

    def test_file_appearing_later_is_picked_up(self, tmp_path: Path) -> None:
        path = tmp_path / "data.json"
        store = AssignmentStore(path)
        assert store.current == {}

        _write(path, DOCUMENT, 1000)
        assert store.refresh() is True
        assert len(store.current) == 3

    def test_without_path(self) -> None:
        store = AssignmentStore()
        assert store.refresh() is False
        assert store.current == {}

    def test_from_mapping(self) -> None:
        store = AssignmentStore.from_mapping({"d": Assignment(display_name="X")})
        assert store.get("d").display_name == "X"

    def test_unreadable_reload_keeps_previous(self, tmp_path: Path) -> None:
        path = tmp_path / "data.json"
        _write(path, DOCUMENT, 1000)
        store = AssignmentStore(path)

        path.unlink()
        path.mkdir()
        os.utime(path, (2000, 2000))
        assert store.refresh() is False
        assert store.get("ALS-0001").display_name == "Lobby unit"
        assert store.refresh() is False
