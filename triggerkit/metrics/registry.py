"""Prometheus metrics for trigger dispatch, record writes and the deferred queue."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

_LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

# Dispatch
DISPATCH_TOTAL = Counter(
    "triggerkit_dispatch_total",
    "Trigger dispatches by final state",
    ["entity_type", "action", "state"],
)

DISPATCH_LATENCY_SECONDS = Histogram(
    "triggerkit_dispatch_latency_seconds",
    "Wall time of one trigger dispatch",
    ["entity_type", "action"],
    buckets=_LATENCY_BUCKETS,
)

HANDLER_INVOCATIONS_TOTAL = Counter(
    "triggerkit_handler_invocations_total",
    "Handler invocations by execution mode",
    ["class_identifier", "mode"],  # mode: sync, deferred, skipped
)

# Record writes
DB_WRITE_TOTAL = Counter(
    "triggerkit_db_write_total",
    "Per-record writes committed by BatchCommitter",
    ["table", "op_type", "status"],
)

DB_WRITE_LATENCY_SECONDS = Histogram(
    "triggerkit_db_write_latency_seconds",
    "Latency of one per-record write",
    ["table", "op_type"],
    buckets=_LATENCY_BUCKETS,
)

# Errors
ERROR_RECORDS_TOTAL = Counter(
    "triggerkit_error_records_total",
    "Error records captured by ErrorHandler",
    ["context"],
)

# Deferred queue
QUEUE_MESSAGES_ENQUEUED_TOTAL = Counter(
    "triggerkit_queue_messages_enqueued_total",
    "Messages added to the stream",
    ["stream"],
)

QUEUE_MESSAGES_READ_TOTAL = Counter(
    "triggerkit_queue_messages_read_total",
    "Messages read from the stream",
    ["stream"],
)

QUEUE_MESSAGES_ACK_TOTAL = Counter(
    "triggerkit_queue_messages_ack_total",
    "Messages acknowledged",
    ["stream"],
)

QUEUE_MESSAGES_CLAIMED_TOTAL = Counter(
    "triggerkit_queue_messages_claimed_total",
    "Stale messages claimed from other consumers",
    ["stream"],
)

QUEUE_READ_LATENCY_SECONDS = Histogram(
    "triggerkit_queue_read_latency_seconds",
    "Latency of one stream read, including blocking time",
    ["stream"],
    buckets=_LATENCY_BUCKETS,
)
