"""Tests for the command vocabulary."""

import pytest

from als_fleet_monitor.commands import (
    DESTRUCTIVE_COMMANDS,
    KEYWORD_COMMANDS,
    CommandError,
    build_command,
    command_topic,
)


@pytest.mark.parametrize("name", sorted(KEYWORD_COMMANDS))
def test_keyword_commands_render_as_is(name: str) -> None:
    assert build_command(name) == name


def test_names_are_case_insensitive() -> None:
    assert build_command(" reboot ") == "REBOOT"


def test_set_interval() -> None:
    assert build_command("SET_INTERVAL_MS", "5000") == "SET_INTERVAL_MS=5000"


@pytest.mark.parametrize("value", [None, "", "abc", "0", "-10", "1.5"])
def test_set_interval_rejects_bad_values(value) -> None:
    with pytest.raises(CommandError):
        build_command("SET_INTERVAL_MS", value)


def test_ota() -> None:
    url = "https://fw.example.com/als/2.5.0.bin"
    assert build_command("ota", url) == f"OTA {url}"


@pytest.mark.parametrize("value", ["ftp://fw.example.com/x.bin", "not a url", "https://"])
def test_ota_rejects_non_http_urls(value: str) -> None:
    with pytest.raises(CommandError):
        build_command("OTA", value)


def test_unknown_command() -> None:
    with pytest.raises(CommandError, match="Unknown command"):
        build_command("SELF_DESTRUCT")


def test_keyword_with_value_is_an_error() -> None:
    with pytest.raises(CommandError):
        build_command("STATUS", "now")


def test_command_error_is_a_value_error() -> None:
    assert issubclass(CommandError, ValueError)


def test_command_topic() -> None:
    assert command_topic("als", "ALS-0042") == "als/ALS-0042/cmd"


@pytest.mark.parametrize("device_id", ["", "a/b", "+", "#"])
def test_command_topic_rejects_wildcards(device_id: str) -> None:
    with pytest.raises(CommandError):
        command_topic("als", device_id)


def test_destructive_commands() -> None:
    assert DESTRUCTIVE_COMMANDS == {"REBOOT", "RESET_WIFI", "FACTORY_RESET"}
