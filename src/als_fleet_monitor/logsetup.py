"""Structured JSON logging with secret redaction.

At startup the resolved configuration is scanned for values whose *keys*
match ``logging.redact_patterns`` (shell-style globs, case-insensitive).
Every matching value is scrubbed from log messages, their arguments and
formatted tracebacks before a record is written.

The redaction filter is attached to each handler: logger-level filters do
not see records propagated from child loggers.
"""

from __future__ import annotations

import fnmatch
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Optional

import orjson

from als_fleet_monitor.config import LogFileConfig

REDACTED = "[REDACTED]"

_LEVEL_ALIASES = {"warn": "WARNING"}


class Redactor:
    """Replaces known secret substrings with ``[REDACTED]``."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        self._secrets: list[str] = []
        for value in secret_values or ():
            self.add(value)

    def add(self, value: str) -> None:
        # Single characters would shred every log line.
        if value and len(value) > 1 and value not in self._secrets:
            self._secrets.append(value)
            self._secrets.sort(key=len, reverse=True)

    def __call__(self, value: Any) -> Any:
        if not isinstance(value, str) or not self._secrets:
            return value
        for secret in self._secrets:
            if secret in value:
                value = value.replace(secret, REDACTED)
        return value


class SecretRedactingFilter(logging.Filter):
    """A handler filter that scrubs secrets from the record's message and args."""

    def __init__(self, redactor: Redactor) -> None:
        super().__init__()
        self.redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.redactor(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self.redactor(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self.redactor(a) for a in record.args)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, event[, exception]."""

    def __init__(self, redactor: Optional[Redactor] = None) -> None:
        super().__init__()
        self._redactor = redactor or Redactor()

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self._redactor(self.formatException(record.exc_info))
        return orjson.dumps(obj).decode()


def collect_secret_values(
    config_dict: dict[str, Any],
    patterns: list[str] | None = None,
) -> list[str]:
    """Collect string values whose keys match any of *patterns*."""
    if not patterns:
        return []
    lowered = [p.lower() for p in patterns]
    found: list[str] = []

    def _walk(obj: Any) -> None:
        if isinstance(obj, dict):
            for key, val in obj.items():
                if isinstance(val, str) and any(
                    fnmatch.fnmatch(str(key).lower(), p) for p in lowered
                ):
                    found.append(val)
                _walk(val)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                _walk(item)

    _walk(config_dict)
    return found


def setup_logging(
    level: str,
    secret_values: list[str] | None = None,
    log_file: Optional[LogFileConfig] = None,
) -> Redactor:
    """Configure the root logger: JSON on stderr, optional rotating file.

    Returns the :class:`Redactor` so secrets learned later can be added.
    """
    redactor = Redactor(secret_values)
    redacting_filter = SecretRedactingFilter(redactor)
    formatter = JsonFormatter(redactor)

    root = logging.getLogger()
    level_name = _LEVEL_ALIASES.get(level.lower(), level.upper())
    root.setLevel(getattr(logging, level_name, logging.INFO))

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None and log_file.enabled:
        Path(log_file.path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                filename=log_file.path,
                maxBytes=log_file.max_size_bytes,
                backupCount=log_file.backup_count,
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(redacting_filter)
        root.addHandler(handler)

    return redactor
