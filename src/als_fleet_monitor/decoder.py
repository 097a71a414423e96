"""Turn a raw broker delivery into an :class:`Envelope`.

Decoding never fails: bytes that are not valid UTF-8 are decoded with
replacement characters and left for the classifier to reject.
"""

from __future__ import annotations

import itertools
import time
from typing import Optional

from als_fleet_monitor.models import Envelope

_sequence = itertools.count(1)


def decode(
    topic: str,
    payload: bytes | bytearray | str,
    received_at: Optional[float] = None,
) -> Envelope:
    """Build an envelope for one delivery.

    Parameters
    ----------
    topic:
        Broker topic the message arrived on.
    payload:
        Raw payload as delivered by the transport.
    received_at:
        Arrival time in epoch seconds.  Defaults to ``time.time()``.
    """
    if received_at is None:
        received_at = time.time()

    if isinstance(payload, str):
        text = payload
    else:
        text = bytes(payload).decode("utf-8", errors="replace")

    envelope_id = f"{int(received_at * 1000)}-{topic}-{next(_sequence)}"
    return Envelope(id=envelope_id, topic=topic, payload=text, received_at=received_at)
