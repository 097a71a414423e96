"""Device display names and customer assignments.

The assignment document is owned by the dashboard backend; the monitor only
reads it.  Expected shape::

    {
      "customers":   [{"id": "c-1", "name": "Demo Hotel"}, ...],
      "deviceNames": {"<device id>": "<display name>", ...},
      "assignments": {"<device id>": "<customer id>", ...}
    }
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

import orjson

from als_fleet_monitor.models import Assignment

logger = logging.getLogger(__name__)


def parse_assignments(document: Any) -> dict[str, Assignment]:
    """Build the ``device id → Assignment`` mapping from a parsed document.

    Raises
    ------
    ValueError
        If the document or its ``deviceNames``/``assignments`` members are
        not JSON objects.
    """
    if not isinstance(document, dict):
        raise ValueError("Assignment document must be a JSON object")

    names = document.get("deviceNames") or {}
    owners = document.get("assignments") or {}
    if not isinstance(names, dict) or not isinstance(owners, dict):
        raise ValueError("deviceNames and assignments must be JSON objects")

    result: dict[str, Assignment] = {}
    for device_id in set(names) | set(owners):
        result[str(device_id)] = Assignment(
            display_name=_clean(names.get(device_id)),
            customer_id=_clean(owners.get(device_id)),
        )
    return result


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


def load_assignments(path: str | Path) -> dict[str, Assignment]:
    """Read and parse the assignment file at *path*.

    A missing file yields an empty mapping (a fresh deployment has no
    assignments yet).  A file that is not valid JSON raises ``ValueError``;
    one that cannot be read raises ``OSError``.
    """
    p = Path(path)
    if not p.exists():
        logger.warning("Assignment file not found at %s; no display names", p)
        return {}
    try:
        document = orjson.loads(p.read_bytes())
    except orjson.JSONDecodeError as exc:
        raise ValueError(f"Invalid assignment file {p}: {exc}") from exc
    return parse_assignments(document)


class AssignmentStore:
    """Cached assignments, reloaded when the backing file changes.

    Parameters
    ----------
    path:
        Assignment file, or ``None`` for an always-empty store.
    """

    def __init__(self, path: Optional[str | Path] = None) -> None:
        self._path = Path(path) if path else None
        self._mtime: Optional[float] = None
        self._loaded = False
        self._assignments: Mapping[str, Assignment] = MappingProxyType({})
        if self._path is not None:
            self.refresh()

    @classmethod
    def from_mapping(cls, assignments: Mapping[str, Assignment]) -> "AssignmentStore":
        store = cls(None)
        store._assignments = MappingProxyType(dict(assignments))
        return store

    @property
    def current(self) -> Mapping[str, Assignment]:
        return self._assignments

    def get(self, device_id: str) -> Assignment:
        return self._assignments.get(device_id, Assignment())

    def refresh(self) -> bool:
        """Reload if the file's mtime changed.  Returns True when reloaded.

        A reload that fails keeps the previous assignments and is not retried
        until the file changes again.
        """
        if self._path is None:
            return False
        try:
            mtime = os.stat(self._path).st_mtime
        except FileNotFoundError:
            mtime = None
        if self._loaded and mtime == self._mtime:
            return False

        try:
            loaded = load_assignments(self._path)
        except (OSError, ValueError) as exc:
            logger.error("Keeping previous assignments: %s", exc)
            self._mtime = mtime
            self._loaded = True
            return False

        self._assignments = MappingProxyType(loaded)
        self._mtime = mtime
        self._loaded = True
        logger.info("Loaded %d device assignments from %s", len(loaded), self._path)
        return True
