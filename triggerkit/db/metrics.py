from __future__ import annotations

import logging

from ..metrics.registry import DB_WRITE_LATENCY_SECONDS, DB_WRITE_TOTAL

logger = logging.getLogger(__name__)


def observe_db_write(table: str, op_type: str, status: str, latency_s: float) -> None:
    """
    Record one per-record write.

    Metric failures are logged and never raised, so they cannot mask the
    outcome of the write itself.
    """
    try:
        DB_WRITE_TOTAL.labels(table=table, op_type=op_type, status=status).inc()
        DB_WRITE_LATENCY_SECONDS.labels(table=table, op_type=op_type).observe(latency_s)
    except Exception:
        logger.debug("Failed to record db write metric for %s/%s", table, op_type, exc_info=True)
