from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from ..committer import BatchCommitter
from ..context import DeferredRuntime, deferred_context
from ..db.loader import RecordLoader
from ..db.tx import DbFactory, DbTx
from ..errors import HandlerConfigError, QueueError
from ..handlers import HandlerCatalog
from ..models import EntityType
from .consumer import QueueConsumer
from .models import QueueMessage
from .redis_streams import RedisStreamsQueue

logger = logging.getLogger(__name__)

WORKER_CONTEXT = "DeferredWorker"
_REQUIRED_FIELDS = ("new_ids", "old_ids", "action", "entity_type", "class_identifier")


class DeferredScheduler:
    """
    Schedules asynchronous handler runs on a Redis stream.

    Fire-and-forget: the dispatcher does not wait for the run and cannot
    cancel it once enqueued.
    """

    def __init__(self, queue: RedisStreamsQueue) -> None:
        self.queue = queue

    def schedule(
        self,
        new_ids: Iterable[Any],
        old_ids: Iterable[Any],
        action_name: str,
        entity_type_name: str,
        class_identifier: str,
    ) -> str:
        payload = {
            "new_ids": sorted(new_ids, key=str),
            "old_ids": sorted(old_ids, key=str),
            "action": action_name,
            "entity_type": entity_type_name,
            "class_identifier": class_identifier,
        }
        msg_id = self.queue.enqueue(payload)
        logger.info(
            "Scheduled deferred %s for %s.%s (%d new, %d old ids) as %s",
            class_identifier,
            entity_type_name,
            action_name,
            len(payload["new_ids"]),
            len(payload["old_ids"]),
            msg_id,
        )
        return msg_id


class DeferredWorker:
    """
    Executes scheduled handler runs.

    Each message is processed in its own transaction (QueueConsumer's
    template method): the handler's run_deferred() loads its records, and
    whatever it commits goes through BatchCommitter with its own savepoint.
    The deferred context is active for the whole run, so handlers invoked
    from inside cannot schedule more deferred work.

    A failing run is rolled back to its own savepoint and recorded through
    the committer's ErrorHandler, then the message is committed and acked.
    Only with error handling disabled does the failure propagate, leaving
    the message pending for recover_stale().

    Usage:
        worker = DeferredWorker(consumer, DbFactory(engine), catalog, {"Account": ACCOUNT}, committer)
        worker.run()
    """

    def __init__(
        self,
        consumer: QueueConsumer,
        db_factory: DbFactory,
        catalog: HandlerCatalog,
        entity_types: Mapping[str, EntityType],
        committer: BatchCommitter,
    ) -> None:
        self.consumer = consumer
        self.db_factory = db_factory
        self.catalog = catalog
        self.entity_types = dict(entity_types)
        self.committer = committer

    def run(self) -> None:
        self.consumer.run(handler=self.handle, db_factory=self.db_factory)

    def stop(self) -> None:
        self.consumer.stop()

    def process(self, msg: QueueMessage) -> None:
        """Process one already-read message: own transaction, commit, ack."""
        self.consumer.process(msg, handler=self.handle, db_factory=self.db_factory)

    def handle(self, msg: QueueMessage, tx: DbTx) -> None:
        """
        Run one deferred handler execution inside a savepoint on tx.

        Failures belong to this run alone. With error handling enabled the
        savepoint is rolled back, an error record is written in tx and the
        message is still committed and acked. With it disabled the failure
        propagates and the message stays pending. A class identifier that
        does not resolve is always logged, recorded and skipped.
        """
        payload = msg.payload
        context = f"{WORKER_CONTEXT}:{payload.get('entity_type')}.{payload.get('action')}"
        error_handler = self.committer.error_handler

        savepoint = tx.savepoint()
        try:
            self._run(msg, tx)
        except HandlerConfigError as exc:
            savepoint.rollback()
            logger.warning("Skipping deferred message %s [%s]: %s", msg.id, context, exc)
            error_handler.process_error(exc, context, tx, entity_type=payload.get("entity_type"))
            return
        except Exception as exc:
            savepoint.rollback()
            if not error_handler.enabled:
                raise
            logger.exception("Deferred message %s failed [%s]", msg.id, context)
            error_handler.process_error(exc, context, tx, entity_type=payload.get("entity_type"))
            return

        savepoint.release()

    def _run(self, msg: QueueMessage, tx: DbTx) -> None:
        payload = msg.payload
        missing = [f for f in _REQUIRED_FIELDS if f not in payload]
        if missing:
            raise QueueError(f"Deferred message {msg.id} is missing fields: {missing}")

        key = payload["class_identifier"]
        handler = self.catalog.resolve(key)
        runtime = DeferredRuntime(
            session=tx,
            loader=RecordLoader(tx),
            committer=self.committer,
            entity_types=self.entity_types,
        )

        logger.debug("Running deferred %s from message %s", key, msg.id)
        with deferred_context(runtime):
            handler.run_deferred(
                set(payload["new_ids"]),
                set(payload["old_ids"]),
                payload["action"],
                payload["entity_type"],
                key,
            )
