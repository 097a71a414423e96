"""NDJSON record sinks used by the persistence collaborator.

FileSink
    Appends one JSON line per record to
    ``{prefix}-{instance_id}-{timestamp}.ndjson.active``.  When the time or
    size threshold is reached the file is flushed, fsynced and atomically
    renamed to ``.ndjson`` so downstream loaders only ever pick up sealed
    files.

StdoutSink
    Writes the same lines to ``sys.stdout.buffer`` (debugging, piping into
    another loader).
"""

from __future__ import annotations

import logging
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Optional

import orjson

logger = logging.getLogger(__name__)

ACTIVE_SUFFIX = ".active"


def encode_record(record: dict[str, Any]) -> bytes:
    """Serialize *record* as a newline-terminated NDJSON line."""
    return orjson.dumps(record, option=orjson.OPT_APPEND_NEWLINE)


class StdoutSink:
    """NDJSON on stdout, flushed after every record.

    A ``BrokenPipeError`` (the reading process exited) is logged and
    re-raised.
    """

    def write(self, record: dict[str, Any]) -> None:
        out = sys.stdout.buffer
        try:
            out.write(encode_record(record))
            out.flush()
        except BrokenPipeError:
            logger.warning("stdout closed by reader; dropping output")
            raise

    def close(self) -> None:
        """stdout is left open."""


class FileSink:
    """Rotating NDJSON file writer.

    Before each write the active file is sealed if it is older than
    ``rotation_seconds`` or larger than ``rotation_bytes``.  Buffered lines
    are flushed every ``flush_every_n`` records or after
    ``flush_interval_ms``, whichever comes first.

    Parameters
    ----------
    output_dir:
        Directory for output files (created if missing).
    prefix, instance_id:
        Leading parts of every filename.
    """

    def __init__(
        self,
        output_dir: str | Path,
        prefix: str = "fleet",
        instance_id: str = "monitor-01",
        rotation_seconds: int = 600,
        rotation_bytes: int = 50 * 1024 * 1024,
        flush_every_n: int = 50,
        flush_interval_ms: int = 1000,
    ) -> None:
        self.directory = Path(output_dir)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._stem = f"{prefix}-{instance_id}"
        self._max_age = float(rotation_seconds)
        self._max_bytes = rotation_bytes
        self._flush_batch = flush_every_n
        self._flush_every = flush_interval_ms / 1000.0

        self._file: Optional[BinaryIO] = None
        self._path: Optional[Path] = None
        self._size = 0
        self._lines = 0
        self._unflushed = 0
        self._started = 0.0
        self._flushed_at = 0.0
        self.records_written = 0

        self._start_file()

    def write(self, record: dict[str, Any]) -> None:
        if self._file is None or self._rotation_due():
            self._seal()
            self._start_file()

        line = encode_record(record)
        self._file.write(line)
        self._size += len(line)
        self._lines += 1
        self._unflushed += 1
        self.records_written += 1

        if (
            self._unflushed >= self._flush_batch
            or time.monotonic() - self._flushed_at >= self._flush_every
        ):
            self._flush()

    def close(self) -> None:
        """Seal the active file.  Safe to call more than once."""
        self._seal()

    def _rotation_due(self) -> bool:
        age = time.monotonic() - self._started
        return self._size >= self._max_bytes or age >= self._max_age

    def _start_file(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        self._path = self.directory / f"{self._stem}-{stamp}.ndjson{ACTIVE_SUFFIX}"
        self._file = open(self._path, "ab")
        self._size = self._lines = self._unflushed = 0
        self._started = self._flushed_at = time.monotonic()
        logger.info("Writing %s", self._path.name)

    def _seal(self) -> None:
        fh, self._file = self._file, None
        if fh is None:
            return
        fh.flush()
        os.fsync(fh.fileno())
        fh.close()

        sealed = self._path.with_suffix("")
        os.replace(self._path, sealed)
        logger.info("Sealed %s (%d records, %d bytes)", sealed.name, self._lines, self._size)

    def _flush(self) -> None:
        if self._file is not None:
            self._file.flush()
        self._unflushed = 0
        self._flushed_at = time.monotonic()
