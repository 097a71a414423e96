"""Device command vocabulary.

Commands are plain-text payloads published on ``<namespace>/<device>/cmd``.
Bare keywords are sent as-is; parameterised commands use the firmware's
``KEY=value`` (interval) or ``KEY value`` (OTA URL) forms.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse

from als_fleet_monitor.classifier import COMMAND_KIND

STATUS = "STATUS"
RESET_CLEAN_LITRES = "RESET_CLEAN_LITRES"
RESET_WASTE_LITRES = "RESET_WASTE_LITRES"
REBOOT = "REBOOT"
RESET_WIFI = "RESET_WIFI"
FACTORY_RESET = "FACTORY_RESET"
SET_INTERVAL_MS = "SET_INTERVAL_MS"
OTA = "OTA"

KEYWORD_COMMANDS = frozenset({
    STATUS,
    RESET_CLEAN_LITRES,
    RESET_WASTE_LITRES,
    REBOOT,
    RESET_WIFI,
    FACTORY_RESET,
})
PARAMETERISED_COMMANDS = frozenset({SET_INTERVAL_MS, OTA})
ALL_COMMANDS = KEYWORD_COMMANDS | PARAMETERISED_COMMANDS

# Operators are asked to confirm these before they are sent.
DESTRUCTIVE_COMMANDS = frozenset({REBOOT, RESET_WIFI, FACTORY_RESET})


class CommandError(ValueError):
    """Raised for unknown commands or invalid command arguments."""


def command_topic(namespace: str, device_id: str) -> str:
    """Topic a device listens on for commands."""
    if not device_id or "/" in device_id or "+" in device_id or "#" in device_id:
        raise CommandError(f"Invalid device id for a command topic: {device_id!r}")
    return f"{namespace}/{device_id}/{COMMAND_KIND}"


def build_command(name: str, value: Optional[str] = None) -> str:
    """Render the payload for command *name*.

    Raises
    ------
    CommandError
        If *name* is unknown, a keyword command is given a value, or a
        parameterised command's value is missing or invalid.
    """
    name = name.strip().upper()
    if name not in ALL_COMMANDS:
        raise CommandError(
            f"Unknown command {name!r}; expected one of {', '.join(sorted(ALL_COMMANDS))}"
        )

    if name in KEYWORD_COMMANDS:
        if value is not None:
            raise CommandError(f"{name} does not take a value")
        return name

    if value is None or not value.strip():
        raise CommandError(f"{name} requires a value")
    value = value.strip()

    if name == SET_INTERVAL_MS:
        try:
            interval = int(value)
        except ValueError as exc:
            raise CommandError(f"{name} expects an integer, got {value!r}") from exc
        if interval <= 0:
            raise CommandError(f"{name} must be positive, got {interval}")
        return f"{SET_INTERVAL_MS}={interval}"

    # OTA
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise CommandError(f"{name} expects an http(s) firmware URL, got {value!r}")
    return f"{OTA} {value}"
