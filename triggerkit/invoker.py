from __future__ import annotations

import logging
from typing import Optional, Sequence

from .actions import Action
from .batch import WriteBatch
from .context import in_deferred_context
from .errors import HandlerConfigError
from .handlers import HandlerCatalog, TriggerHandler
from .metrics.registry import HANDLER_INVOCATIONS_TOTAL
from .models import EntityRecord, EntityType, HandlerDescriptor

logger = logging.getLogger(__name__)


class HandlerInvoker:
    """
    Runs one configured handler.

    Handlers whose class identifier does not resolve are logged and skipped;
    a bad descriptor never fails the dispatch. Asynchronous descriptors are
    handed to the scheduler as id sets, except when:

    - the action is BeforeInsert (records have no ids yet)
    - the caller is already inside deferred or batch execution
    - no scheduler is configured

    in which case run() is called synchronously.
    """

    def __init__(self, catalog: HandlerCatalog, scheduler=None) -> None:
        self.catalog = catalog
        self.scheduler = scheduler

    def invoke(
        self,
        descriptor: HandlerDescriptor,
        new_records: Sequence[EntityRecord],
        old_records: Sequence[EntityRecord],
        action: Action,
        entity_type: EntityType,
    ) -> Optional[WriteBatch]:
        key = descriptor.class_identifier
        try:
            handler = self.catalog.resolve(key)
        except HandlerConfigError as exc:
            logger.warning("Skipping trigger handler %s for %s.%s: %s", key, entity_type.name, action.value, exc)
            _count(key, "skipped")
            return None

        if descriptor.filter_field:
            new_records, old_records = self._apply_filter(descriptor, new_records, old_records)
            if not new_records and not old_records:
                logger.debug("All records filtered out for %s", key)
                _count(key, "skipped")
                return None

        if self._can_defer(descriptor, action):
            self._schedule(descriptor, new_records, old_records, action, entity_type)
            _count(key, "deferred")
            return None

        _count(key, "sync")
        return self._run(handler, new_records, old_records, action, entity_type)

    def _can_defer(self, descriptor: HandlerDescriptor, action: Action) -> bool:
        if not descriptor.asynchronous:
            return False
        if action == Action.BEFORE_INSERT:
            return False
        if in_deferred_context():
            logger.debug("Running %s synchronously: already in deferred context", descriptor.class_identifier)
            return False
        if self.scheduler is None:
            logger.debug("Running %s synchronously: no scheduler configured", descriptor.class_identifier)
            return False
        return True

    def _schedule(
        self,
        descriptor: HandlerDescriptor,
        new_records: Sequence[EntityRecord],
        old_records: Sequence[EntityRecord],
        action: Action,
        entity_type: EntityType,
    ) -> None:
        new_ids = {r.id for r in new_records if r.has_identity}
        old_ids = {r.id for r in old_records if r.has_identity}
        self.scheduler.schedule(
            new_ids=new_ids,
            old_ids=old_ids,
            action_name=action.value,
            entity_type_name=entity_type.name,
            class_identifier=descriptor.class_identifier,
        )

    @staticmethod
    def _run(
        handler: TriggerHandler,
        new_records: Sequence[EntityRecord],
        old_records: Sequence[EntityRecord],
        action: Action,
        entity_type: EntityType,
    ) -> Optional[WriteBatch]:
        return handler.run(list(new_records), list(old_records), action, entity_type)

    @staticmethod
    def _apply_filter(
        descriptor: HandlerDescriptor,
        new_records: Sequence[EntityRecord],
        old_records: Sequence[EntityRecord],
    ) -> tuple[list[EntityRecord], list[EntityRecord]]:
        field = descriptor.filter_field

        def excluded(record: EntityRecord) -> bool:
            value = record.get(field)
            return value is not None and str(value) == descriptor.filter_value

        # new and old are aligned by position on update; drop pairs together
        if new_records and old_records and len(new_records) == len(old_records):
            pairs = [(n, o) for n, o in zip(new_records, old_records) if not excluded(n)]
            return [n for n, _ in pairs], [o for _, o in pairs]

        return (
            [r for r in new_records if not excluded(r)],
            [r for r in old_records if not excluded(r)],
        )


def _count(class_identifier: str, mode: str) -> None:
    try:
        HANDLER_INVOCATIONS_TOTAL.labels(class_identifier=class_identifier, mode=mode).inc()
    except Exception:
        logger.debug("Failed to record handler metric for %s", class_identifier, exc_info=True)
