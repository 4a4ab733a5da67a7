from __future__ import annotations

import json
import logging
import time
from typing import Any, Mapping

from redis import Redis
from redis.exceptions import RedisError, ResponseError

from ..config import QueueConfig
from ..errors import QueueError
from ..metrics.registry import (
    QUEUE_MESSAGES_ACK_TOTAL,
    QUEUE_MESSAGES_CLAIMED_TOTAL,
    QUEUE_MESSAGES_ENQUEUED_TOTAL,
    QUEUE_MESSAGES_READ_TOTAL,
    QUEUE_READ_LATENCY_SECONDS,
)
from .models import QueueMessage

logger = logging.getLogger(__name__)

PAYLOAD_FIELD = "payload"


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisStreamsQueue:
    """
    Low-level Redis Streams queue with one consumer group.

    Payloads are JSON objects stored under a single stream field. The consumer
    group is created on construction (with MKSTREAM); an existing group is
    not an error.

    All Redis failures are raised as QueueError.
    """

    def __init__(self, redis: Redis, config: QueueConfig) -> None:
        self.redis = redis
        self.config = config
        self._ensure_group()

    def _ensure_group(self) -> None:
        try:
            self.redis.xgroup_create(
                name=self.config.stream_key,
                groupname=self.config.consumer_group,
                id="0",
                mkstream=True,
            )
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise QueueError(f"Failed to create consumer group: {exc}") from exc
        except RedisError as exc:
            raise QueueError(f"Failed to create consumer group: {exc}") from exc

    def enqueue(self, payload: Mapping[str, Any]) -> str:
        """Append a message and return its entry id."""
        try:
            body = json.dumps(payload, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise QueueError(f"Payload is not JSON serializable: {exc}") from exc

        try:
            msg_id = self.redis.xadd(self.config.stream_key, {PAYLOAD_FIELD: body})
        except RedisError as exc:
            raise QueueError(f"Failed to enqueue message: {exc}") from exc

        QUEUE_MESSAGES_ENQUEUED_TOTAL.labels(stream=self.config.stream_key).inc()
        return _decode(msg_id)

    def read(self, block_ms: int, count: int = 1) -> list[QueueMessage]:
        """Read up to count new messages for this consumer, blocking up to block_ms."""
        start_time = time.monotonic()
        try:
            response = self.redis.xreadgroup(
                groupname=self.config.consumer_group,
                consumername=self.config.consumer_name,
                streams={self.config.stream_key: ">"},
                count=count,
                block=block_ms,
            )
        except RedisError as exc:
            raise QueueError(f"Failed to read from stream: {exc}") from exc
        finally:
            QUEUE_READ_LATENCY_SECONDS.labels(stream=self.config.stream_key).observe(
                time.monotonic() - start_time
            )

        messages: list[QueueMessage] = []
        for _stream, entries in response or []:
            messages.extend(self._parse_entries(entries))

        if messages:
            QUEUE_MESSAGES_READ_TOTAL.labels(stream=self.config.stream_key).inc(len(messages))
        return messages

    def ack(self, msg: QueueMessage) -> None:
        try:
            self.redis.xack(self.config.stream_key, self.config.consumer_group, msg.id)
        except RedisError as exc:
            raise QueueError(f"Failed to ack message {msg.id}: {exc}") from exc
        QUEUE_MESSAGES_ACK_TOTAL.labels(stream=self.config.stream_key).inc()

    def claim_stale(self, min_idle_ms: int, count: int = 1) -> list[QueueMessage]:
        """Claim messages other consumers left pending for at least min_idle_ms."""
        try:
            response = self.redis.xautoclaim(
                name=self.config.stream_key,
                groupname=self.config.consumer_group,
                consumername=self.config.consumer_name,
                min_idle_time=min_idle_ms,
                start_id="0-0",
                count=count,
            )
        except RedisError as exc:
            raise QueueError(f"Failed to claim stale messages: {exc}") from exc

        # [next_start_id, entries] or [next_start_id, entries, deleted_ids]
        entries = response[1] if response and len(response) > 1 else []
        messages = self._parse_entries(entries)
        if messages:
            QUEUE_MESSAGES_CLAIMED_TOTAL.labels(stream=self.config.stream_key).inc(len(messages))
        return messages

    def _parse_entries(self, entries) -> list[QueueMessage]:
        messages = []
        for msg_id, fields in entries or []:
            if not fields:
                # Entry was trimmed from the stream while pending
                continue
            raw = fields.get(PAYLOAD_FIELD)
            if raw is None:
                raw = fields.get(PAYLOAD_FIELD.encode())
            try:
                payload = json.loads(_decode(raw)) if raw is not None else {}
            except ValueError as exc:
                raise QueueError(f"Message {_decode(msg_id)} has a malformed payload: {exc}") from exc
            messages.append(
                QueueMessage(id=_decode(msg_id), payload=payload, stream_key=self.config.stream_key)
            )
        return messages
