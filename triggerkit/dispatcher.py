from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Optional, Sequence

from .actions import Action, resolve_action
from .batch import WriteBatch
from .committer import BatchCommitter
from .config import DispatchConfig
from .db.session import Savepoint
from .db.tx import DbTx
from .error_handler import ErrorHandler
from .errors import TriggerRejected
from .invoker import HandlerInvoker
from .metrics.registry import DISPATCH_LATENCY_SECONDS, DISPATCH_TOTAL
from .models import EntityRecord, EntityType
from .registry import HandlerRegistry

logger = logging.getLogger(__name__)


class DispatchState(str, Enum):
    START = "start"
    ACTION_RESOLVED = "action_resolved"
    HANDLERS_LOADED = "handlers_loaded"
    DISPATCHING = "dispatching"
    COMMITTING = "committing"
    SUCCESS = "success"
    ROLLED_BACK = "rolled_back"
    SKIPPED = "skipped"


class TriggerDispatcher:
    """
    Runs the configured handlers for one mutation event and commits their writes.

    One call to dispatch() is one unit of work with one rollback point:

    1) seed default descriptors the first time (in the caller's transaction)
    2) open a savepoint on the caller's session
    3) resolve the action and load handler descriptors
    4) invoke each handler in registry order, merging returned WriteBatches
    5) commit the aggregate through BatchCommitter
    6) release the savepoint

    Any exception from steps 1-5 is caught once here. With error handling
    enabled the savepoint is rolled back, the failure is recorded through
    ErrorHandler and dispatch() returns ROLLED_BACK. With error handling
    disabled the savepoint is released and the exception re-raised, so
    anything already written stays written. In propagate_errors mode the
    failure message is also attached to the first triggering record and
    TriggerRejected is raised.

    Usage:
        dispatcher = TriggerDispatcher(registry, HandlerInvoker(catalog, scheduler))

        with DbSession(engine) as session:
            session.execute("INSERT INTO account ...")
            dispatcher.dispatch(
                is_before=False, is_after=True,
                is_insert=True, is_update=False, is_delete=False, is_undelete=False,
                new_records=[account], old_records=[],
                entity_type=ACCOUNT, session=session,
            )
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        invoker: HandlerInvoker,
        error_handler: ErrorHandler | None = None,
        committer: BatchCommitter | None = None,
        config: DispatchConfig | None = None,
    ) -> None:
        self.registry = registry
        self.invoker = invoker
        self.config = config or DispatchConfig()
        self.error_handler = error_handler or ErrorHandler(dispatch_config=self.config)
        self.committer = committer or BatchCommitter(self.error_handler)

    def dispatch(
        self,
        is_before: bool,
        is_after: bool,
        is_insert: bool,
        is_update: bool,
        is_delete: bool,
        is_undelete: bool,
        new_records: Optional[Sequence[EntityRecord]],
        old_records: Optional[Sequence[EntityRecord]],
        entity_type: EntityType,
        session: DbTx,
        registry: HandlerRegistry | None = None,
    ) -> DispatchState:
        new_records = list(new_records or [])
        old_records = list(old_records or [])
        registry = registry or self.registry

        if self.config.disable_all_triggers:
            logger.debug("Triggers disabled; skipping %s dispatch", entity_type.name)
            return DispatchState.SKIPPED

        start_time = time.monotonic()
        state = DispatchState.START
        action: Action | None = None
        savepoint: Savepoint | None = None

        try:
            # Seeded rows join the caller's transaction, outside this dispatch's rollback point
            registry.ensure_defaults(session)
            savepoint = session.savepoint()

            action = resolve_action(is_before, is_after, is_insert, is_update, is_delete, is_undelete)
            state = DispatchState.ACTION_RESOLVED

            descriptors = registry.get_handlers_for(entity_type.name, action, session)
            state = DispatchState.HANDLERS_LOADED
            logger.debug(
                "%s.%s: %d handlers for %d new / %d old records",
                entity_type.name,
                action.value,
                len(descriptors),
                len(new_records),
                len(old_records),
            )

            state = DispatchState.DISPATCHING
            aggregate = WriteBatch()
            for descriptor in descriptors:
                batch = self.invoker.invoke(descriptor, new_records, old_records, action, entity_type)
                if batch is not None and not batch.is_empty:
                    aggregate.merge(batch)

            state = DispatchState.COMMITTING
            final_state = DispatchState.SUCCESS
            if not aggregate.is_empty:
                result = self.committer.commit(aggregate, session)
                if result.rolled_back:
                    final_state = DispatchState.ROLLED_BACK
                    if self.config.propagate_errors:
                        self._reject(new_records, old_records, result.errors.summary())

        except TriggerRejected:
            _close(savepoint, release=True)
            self._observe(entity_type, action, DispatchState.ROLLED_BACK, start_time)
            raise
        except Exception as exc:
            if not self.error_handler.enabled:
                logger.debug("Error handling disabled; re-raising failure in %s", state.value)
                _close(savepoint, release=True)
                self._observe(entity_type, action, DispatchState.ROLLED_BACK, start_time)
                raise

            _close(savepoint, release=False)
            context = _context_tag(entity_type, action)
            logger.exception("Trigger dispatch failed in state %s [%s]", state.value, context)
            self.error_handler.process_error(exc, context, session, entity_type=entity_type.name)
            self._observe(entity_type, action, DispatchState.ROLLED_BACK, start_time)

            if self.config.propagate_errors:
                self._reject(new_records, old_records, str(exc) or type(exc).__name__, cause=exc)
            return DispatchState.ROLLED_BACK

        savepoint.release()
        self._observe(entity_type, action, final_state, start_time)
        return final_state

    @staticmethod
    def _reject(
        new_records: list[EntityRecord],
        old_records: list[EntityRecord],
        message: str,
        cause: BaseException | None = None,
    ) -> None:
        """
        Attach the failure to the first triggering record and raise TriggerRejected.

        Which record caused the failure is not known, so only the first new
        record (or first old record when there are no new ones) gets the message.
        """
        records = new_records or old_records
        if records:
            records[0].add_error(message)
        raise TriggerRejected(message) from cause

    @staticmethod
    def _observe(
        entity_type: EntityType,
        action: Action | None,
        state: DispatchState,
        start_time: float,
    ) -> None:
        action_label = action.value if action is not None else "unresolved"
        try:
            DISPATCH_TOTAL.labels(
                entity_type=entity_type.name, action=action_label, state=state.value
            ).inc()
            DISPATCH_LATENCY_SECONDS.labels(entity_type=entity_type.name, action=action_label).observe(
                time.monotonic() - start_time
            )
        except Exception:
            logger.debug("Failed to record dispatch metric", exc_info=True)


def _close(savepoint: Savepoint | None, release: bool) -> None:
    if savepoint is None:
        return
    if release:
        savepoint.release()
    else:
        savepoint.rollback()


def _context_tag(entity_type: EntityType, action: Action | None) -> str:
    action_label = action.value if action is not None else "unresolved"
    return f"TriggerDispatcher:{entity_type.name}.{action_label}"
