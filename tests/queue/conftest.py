from __future__ import annotations

import json
import uuid
from unittest.mock import MagicMock

import pytest

from triggerkit.config import QueueConfig


@pytest.fixture
def queue_config(request: pytest.FixtureRequest) -> QueueConfig:
    """A QueueConfig with a per-test stream key, group and consumer name."""
    test_id = uuid.uuid4().hex[:8]
    return QueueConfig(
        stream_key=f"test_stream_{request.node.name[:30]}_{test_id}",
        consumer_group=f"test_group_{test_id}",
        consumer_name=f"test_consumer_{test_id}",
        block_ms=100,
    )


@pytest.fixture
def redis_client() -> MagicMock:
    """
    Redis client double.

    xadd returns sequential entry ids; tests set xreadgroup.return_value with
    stream_response() to simulate reads.
    """
    client = MagicMock()
    counter = iter(range(1, 1_000_000))
    client.xadd.side_effect = lambda *args, **kwargs: f"{next(counter)}-0".encode()
    client.xreadgroup.return_value = []
    return client


@pytest.fixture
def stream_response():
    """Build an XREADGROUP response with bytes keys, as redis-py returns without decode_responses."""

    def _build(stream_key: str, *entries: tuple[str, dict]) -> list:
        return [
            [
                stream_key.encode(),
                [(msg_id.encode(), {b"payload": json.dumps(payload).encode()}) for msg_id, payload in entries],
            ]
        ]

    return _build
