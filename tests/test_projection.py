"""Tests for the read-model projection."""

import orjson

from als_fleet_monitor.models import (
    Assignment,
    DeviceRecord,
    Envelope,
    TelemetryPayload,
)
from als_fleet_monitor.projection import (
    ROLE_CUSTOMER,
    augment,
    device_list,
    device_view,
    filter_history,
    iso_timestamp,
    to_dict,
)

T0 = 1700000000.0

DEVICES = {
    "als-003": DeviceRecord(id="als-003", last_seen=T0),
    "als-001": DeviceRecord(id="als-001", last_seen=T0),
    "als-002": DeviceRecord(id="als-002", last_seen=T0, is_online=False),
    "als-004": DeviceRecord(id="als-004", last_seen=T0),
}

ASSIGNMENTS = {
    "als-001": Assignment(display_name="bravo Hotel", customer_id="c-1"),
    "als-002": Assignment(display_name="Alpha Spa", customer_id="c-2"),
    "als-003": Assignment(display_name="charlie Farm", customer_id="c-1"),
}


def test_augment_joins_every_device() -> None:
    views = {v.id: v for v in augment(DEVICES, ASSIGNMENTS)}
    assert set(views) == set(DEVICES)
    assert views["als-001"].display_name == "bravo Hotel"
    assert views["als-004"].display_name is None
    assert views["als-004"].label == "als-004"


def test_admin_list_sorted_case_insensitively_by_label() -> None:
    """Labels sort without regard to case; unnamed devices sort by id."""
    labels = [v.label for v in device_list(DEVICES, ASSIGNMENTS)]
    assert labels == ["Alpha Spa", "als-004", "bravo Hotel", "charlie Farm"]


def test_customer_role_sees_only_assigned_devices() -> None:
    views = device_list(DEVICES, ASSIGNMENTS, role=ROLE_CUSTOMER, customer_id="c-1")
    assert [v.id for v in views] == ["als-001", "als-003"]


def test_customer_role_without_customer_sees_all() -> None:
    views = device_list(DEVICES, ASSIGNMENTS, role=ROLE_CUSTOMER, customer_id=None)
    assert len(views) == len(DEVICES)


def test_query_matches_label_or_id() -> None:
    """Search is a case-insensitive substring match on label or id."""
    assert [v.id for v in device_list(DEVICES, ASSIGNMENTS, query="HOTEL")] == ["als-001"]
    assert [v.id for v in device_list(DEVICES, ASSIGNMENTS, query="als-00")] == [
        "als-002",
        "als-004",
        "als-001",
        "als-003",
    ]
    assert device_list(DEVICES, ASSIGNMENTS, query="zzz") == []


def test_device_view() -> None:
    view = device_view(DEVICES, ASSIGNMENTS, "als-002")
    assert view.label == "Alpha Spa"
    assert view.record.is_online is False
    assert device_view(DEVICES, ASSIGNMENTS, "unknown") is None


def test_filter_history_by_topic() -> None:
    history = (
        Envelope(id="3", topic="als/d/stat", payload="{}", received_at=T0 + 2),
        Envelope(id="2", topic="als/d/tele", payload="{}", received_at=T0 + 1),
        Envelope(id="1", topic="als/d/TELE", payload="{}", received_at=T0),
    )
    view = device_view({"d": DeviceRecord(id="d", message_history=history)}, {}, "d")

    assert [e.id for e in filter_history(view, "tele")] == ["2", "1"]
    assert len(filter_history(view, "")) == 3


def test_to_dict_is_json_ready() -> None:
    """The dict serialises with orjson and uses ISO timestamps."""
    record = DeviceRecord(
        id="d",
        last_seen=T0,
        latest_telemetry=TelemetryPayload(device_id="d", tds=120.0),
        message_history=tuple(
            Envelope(id=str(i), topic="als/d/tele", payload="{}", received_at=T0)
            for i in range(5)
        ),
    )
    view = device_view({"d": record}, {"d": Assignment(display_name="Pump")}, "d")
    data = to_dict(view, history_limit=2)

    assert data["last_seen"] == iso_timestamp(T0) == "2023-11-14T22:13:20+00:00"
    assert data["latest_telemetry"] == {"device_id": "d", "tds": 120.0}
    assert data["status_info"] == {}
    assert len(data["message_history"]) == 2
    assert orjson.loads(orjson.dumps(data))["display_name"] == "Pump"


def test_projection_does_not_mutate_input() -> None:
    before = dict(DEVICES)
    device_list(DEVICES, ASSIGNMENTS, query="a")
    assert DEVICES == before


def test_accented_labels_sort_beside_their_base_letter() -> None:
    devices = {
        d: DeviceRecord(id=d, last_seen=T0) for d in ("als-010", "als-011", "als-012")
    }
    names = {
        "als-010": Assignment(display_name="Zeytinli"),
        "als-011": Assignment(display_name="Çamlık"),
        "als-012": Assignment(display_name="Ayvalık"),
    }
    labels = [v.label for v in device_list(devices, names)]
    assert labels == ["Ayvalık", "Çamlık", "Zeytinli"]


def test_query_is_case_insensitive_for_non_ascii() -> None:
    devices = {"als-011": DeviceRecord(id="als-011", last_seen=T0)}
    names = {"als-011": Assignment(display_name="Çamlık")}
    assert [v.id for v in device_list(devices, names, query="çaml")] == ["als-011"]
