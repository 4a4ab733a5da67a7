from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from typing import Optional

from redis import Redis

from ..config import QueueConfig
from ..db.tx import DbFactory, DbTx
from ..errors import QueueError
from .models import QueueMessage
from .redis_streams import RedisStreamsQueue

logger = logging.getLogger(__name__)

MessageHandler = Callable[[QueueMessage, DbTx], None]


class QueueConsumer:
    """
    Pulls deferred-run messages off a Redis stream and hands each one to a
    handler inside its own database transaction.

    Delivery is at-least-once. A message is acked only after its transaction
    commits; anything that fails before that leaves it pending in the group,
    where recover_stale() can pick it up later. The consumer never retries on
    its own and never runs background threads.

    Usage:
        consumer = QueueConsumer(redis_client, config)

        def handler(msg: QueueMessage, tx: DbTx) -> None:
            ...

        consumer.run(handler=handler, db_factory=DbFactory(engine))
    """

    def __init__(self, redis: Redis, config: QueueConfig) -> None:
        """
        Raises:
            QueueError: The consumer group could not be created
        """
        self.config = config
        self._queue = RedisStreamsQueue(redis, config)
        self._stopping = threading.Event()

    @property
    def queue(self) -> RedisStreamsQueue:
        return self._queue

    def next(self, block_ms: Optional[int] = None) -> Optional[QueueMessage]:
        """
        Read one new message, waiting up to block_ms (config.block_ms by default).

        Returns None on timeout, and immediately once stop() was called.
        """
        if self._stopping.is_set():
            return None

        wait_ms = self.config.block_ms if block_ms is None else block_ms
        if not isinstance(wait_ms, int) or wait_ms <= 0:
            # Redis treats BLOCK 0 as "wait forever"
            raise QueueError("block_ms must be a positive integer (> 0)")

        batch = self._queue.read(block_ms=wait_ms, count=1)
        return batch[0] if batch else None

    def iter_messages(self) -> Iterator[QueueMessage]:
        while not self._stopping.is_set():
            msg = self.next()
            if msg is not None:
                yield msg

    def ack(self, msg: QueueMessage) -> None:
        self._queue.ack(msg)

    def stop(self) -> None:
        """Stop reading. A message already being processed still finishes."""
        self._stopping.set()

    def run(self, *, handler: MessageHandler, db_factory: DbFactory) -> None:
        """
        Process messages until stop() is called.

        Handler exceptions propagate and end the loop; the failed message
        stays pending.
        """
        for msg in self.iter_messages():
            self.process(msg, handler=handler, db_factory=db_factory)

    def process(self, msg: QueueMessage, *, handler: MessageHandler, db_factory: DbFactory) -> None:
        """Begin a transaction, run handler, commit, then ack."""
        tx = db_factory.begin()
        try:
            handler(msg, tx)
        except Exception:
            logger.warning("Deferred message %s failed; leaving it pending", msg.id)
            tx.rollback()
            raise

        # commit() rolls back and closes the transaction itself if it fails
        tx.commit()
        # ack after commit: a lost ack only causes a redelivery
        self.ack(msg)

    def recover_stale(self, min_idle_ms: Optional[int] = None, count: int = 1) -> list[QueueMessage]:
        """Claim messages another consumer left pending for at least min_idle_ms."""
        idle_ms = self.config.claim_idle_ms if min_idle_ms is None else min_idle_ms
        return self._queue.claim_stale(min_idle_ms=idle_ms, count=count)
