from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Sequence, Set

from .actions import Action
from .batch import WriteBatch
from .context import current_runtime
from .errors import HandlerConfigError
from .models import EntityRecord, EntityType

logger = logging.getLogger(__name__)


class TriggerHandler(ABC):
    """
    Base class for pluggable trigger handlers.

    Handlers never write directly. run() returns the writes it wants as a
    WriteBatch; the dispatcher merges batches from all handlers and commits
    them together.

    run_deferred() is the entry point for asynchronous descriptors. It runs in
    a DeferredWorker with its own transaction. The default implementation
    reloads the records by id, calls run() and commits the result through the
    worker's BatchCommitter.
    """

    @abstractmethod
    def run(
        self,
        new_records: Sequence[EntityRecord],
        old_records: Sequence[EntityRecord],
        action: Action,
        entity_type: EntityType,
    ) -> Optional[WriteBatch]:
        ...

    def run_deferred(
        self,
        new_ids: Set[Any],
        old_ids: Set[Any],
        action_name: str,
        entity_type_name: str,
        class_identifier: str,
    ) -> None:
        runtime = current_runtime()
        entity_type = runtime.entity_type(entity_type_name)
        action = Action(action_name)

        new_records = runtime.loader.load(entity_type, new_ids)
        old_records = runtime.loader.load(entity_type, old_ids)
        logger.debug(
            "Deferred %s for %s.%s: %d new, %d old",
            class_identifier,
            entity_type_name,
            action_name,
            len(new_records),
            len(old_records),
        )

        batch = self.run(new_records, old_records, action, entity_type)
        if batch is not None and not batch.is_empty:
            runtime.committer.commit(batch, runtime.session)


HandlerFactory = Callable[[], TriggerHandler]


class HandlerCatalog:
    """
    Maps stable class identifiers to handler factories.

    The class_identifier stored in a HandlerDescriptor is looked up here.

    Usage:
        catalog = HandlerCatalog()

        @catalog.handler("AccountContactSync")
        class AccountContactSync(TriggerHandler):
            def run(self, new_records, old_records, action, entity_type):
                ...
    """

    def __init__(self) -> None:
        self._factories: dict[str, HandlerFactory] = {}

    def register(self, key: str, factory: HandlerFactory) -> None:
        if not key:
            raise ValueError("Handler key cannot be empty")
        if key in self._factories:
            logger.warning("Replacing handler factory for %s", key)
        self._factories[key] = factory

    def handler(self, key: str) -> Callable[[type], type]:
        """Class decorator registering the class itself as the factory."""

        def decorator(cls: type) -> type:
            self.register(key, cls)
            return cls

        return decorator

    def __contains__(self, key: str) -> bool:
        return key in self._factories

    def keys(self) -> list[str]:
        return list(self._factories)

    def resolve(self, key: str) -> TriggerHandler:
        """
        Construct the handler registered under key.

        Raises:
            HandlerConfigError: If the key is unknown, the factory fails, or
                the result is not a TriggerHandler
        """
        factory = self._factories.get(key)
        if factory is None:
            raise HandlerConfigError(f"No handler registered for {key!r}")

        try:
            instance = factory()
        except Exception as exc:
            raise HandlerConfigError(f"Handler factory for {key!r} failed: {exc}") from exc

        if not isinstance(instance, TriggerHandler):
            raise HandlerConfigError(
                f"Handler {key!r} resolved to {type(instance).__name__}, which is not a TriggerHandler"
            )
        return instance
