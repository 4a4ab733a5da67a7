from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True)
class QueueMessage:
    """
    One message read from the stream.

    id is the Redis Streams entry id; it is what ack() needs.
    """

    id: str
    payload: Mapping[str, Any]
    stream_key: str
