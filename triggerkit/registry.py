from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional, Protocol, Sequence

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from .actions import Action
from .config import DbConfig
from .db.session import DbSession
from .db.tx import DbTx
from .models import HandlerDescriptor

logger = logging.getLogger(__name__)

ACTION_SEPARATOR = ";"


class HandlerRegistry(Protocol):
    """
    Source of handler configuration.

    get_handlers_for() returns only active descriptors for the entity type and
    action, already in execution order. ensure_defaults() seeds the default
    descriptors if the store is empty; it is idempotent and safe to call from
    concurrent dispatches.

    session, when given, is the caller's unit of work. Stores that live in the
    database read and seed through it instead of opening a second connection.
    """

    def is_empty(self, session: Optional[DbTx] = None) -> bool:
        ...

    def get_handlers_for(
        self, entity_type_name: str, action: Action, session: Optional[DbTx] = None
    ) -> list[HandlerDescriptor]:
        ...

    def ensure_defaults(self, session: Optional[DbTx] = None) -> bool:
        ...


class _SeedOnce:
    """Owns the has-seeded flag and the lock guarding it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seeded = False

    @property
    def seeded(self) -> bool:
        return self._seeded

    def run(self, seed) -> bool:
        if self._seeded:
            return False
        with self._lock:
            if self._seeded:
                return False
            inserted = seed()
            self._seeded = True
            return inserted


class InMemoryHandlerRegistry:
    """
    HandlerRegistry kept in process memory.

    Usage:
        registry = InMemoryHandlerRegistry(defaults=[
            HandlerDescriptor("AccountContactSync", "Account", {Action.AFTER_INSERT}),
        ])
    """

    def __init__(
        self,
        descriptors: Iterable[HandlerDescriptor] = (),
        defaults: Iterable[HandlerDescriptor] = (),
    ) -> None:
        self._descriptors: list[HandlerDescriptor] = list(descriptors)
        self._defaults: list[HandlerDescriptor] = list(defaults)
        self._seed = _SeedOnce()
        self.seed_count = 0

    def add(self, descriptor: HandlerDescriptor) -> None:
        self._descriptors.append(descriptor)

    def is_empty(self, session: Optional[DbTx] = None) -> bool:
        return not self._descriptors

    def get_handlers_for(
        self, entity_type_name: str, action: Action, session: Optional[DbTx] = None
    ) -> list[HandlerDescriptor]:
        matching = [d for d in self._descriptors if d.applies_to(entity_type_name, action)]
        # sorted() is stable, so equal load_order keeps insertion order
        return sorted(matching, key=lambda d: d.load_order)

    def ensure_defaults(self, session: Optional[DbTx] = None) -> bool:
        return self._seed.run(self._seed_if_empty)

    def _seed_if_empty(self) -> bool:
        if self._descriptors or not self._defaults:
            return False
        self._descriptors.extend(self._defaults)
        self.seed_count += 1
        logger.info("Seeded %d default trigger handlers", len(self._defaults))
        return True


class SqlHandlerRegistry:
    """
    HandlerRegistry backed by a database table.

    Descriptors are not cached between dispatches. Reads and seeding go
    through the caller's session when one is passed, so a dispatch that has
    already written in its transaction never waits on a second connection.
    Without a session each call opens a short DbSession of its own.

    Seeding inserts the defaults under a savepoint when the table is empty.
    The unique constraint on (entity_type, class_identifier) makes a
    concurrent seed from another process fail with a duplicate key; that
    savepoint is rolled back and the error logged and suppressed.

    Usage:
        registry = SqlHandlerRegistry(engine, DbConfig(), defaults=DEFAULTS)
        registry.create_schema()
        registry.get_handlers_for("Account", Action.AFTER_INSERT)
    """

    def __init__(
        self,
        engine: Engine,
        db_config: DbConfig | None = None,
        defaults: Sequence[HandlerDescriptor] = (),
    ) -> None:
        self.engine = engine
        self.db_config = db_config or DbConfig()
        self.defaults = list(defaults)
        self._table = _handler_table(MetaData(), self.db_config.handler_table)
        self._seed = _SeedOnce()

    def create_schema(self) -> None:
        self._table.metadata.create_all(self.engine)

    @contextmanager
    def _session(self, session: Optional[DbTx]) -> Iterator[DbTx]:
        if session is not None:
            yield session
            return
        with DbSession(self.engine) as own:
            yield own

    def is_empty(self, session: Optional[DbTx] = None) -> bool:
        with self._session(session) as s:
            return self._count(s) == 0

    def get_handlers_for(
        self, entity_type_name: str, action: Action, session: Optional[DbTx] = None
    ) -> list[HandlerDescriptor]:
        table = self.db_config.handler_table
        with self._session(session) as s:
            rows = s.fetch_all(
                "SELECT class_identifier, entity_type, actions, load_order, is_async, active, "
                f"filter_field, filter_value FROM {table} "
                "WHERE entity_type = :entity_type AND active = :active "
                "ORDER BY load_order, id",
                {"entity_type": entity_type_name, "active": True},
            )

        descriptors = [_row_to_descriptor(row) for row in rows]
        return [d for d in descriptors if action in d.actions]

    def add(self, descriptor: HandlerDescriptor, session: Optional[DbTx] = None) -> None:
        with self._session(session) as s:
            self._insert(s, descriptor)

    def ensure_defaults(self, session: Optional[DbTx] = None) -> bool:
        return self._seed.run(lambda: self._seed_if_empty(session))

    def _seed_if_empty(self, session: Optional[DbTx]) -> bool:
        if not self.defaults:
            return False

        try:
            with self._session(session) as s, s.savepoint():
                if self._count(s) > 0:
                    return False
                for descriptor in self.defaults:
                    self._insert(s, descriptor)
        except IntegrityError as exc:
            if not _is_duplicate_key(exc):
                raise
            logger.info("Default trigger handlers already seeded elsewhere: %s", exc.orig)
            return False

        logger.info("Seeded %d default trigger handlers", len(self.defaults))
        return True

    def _count(self, session: DbTx) -> int:
        return int(session.execute_scalar(f"SELECT COUNT(*) FROM {self.db_config.handler_table}"))

    def _insert(self, session: DbTx, descriptor: HandlerDescriptor) -> None:
        session.execute(
            f"INSERT INTO {self.db_config.handler_table} "
            "(class_identifier, entity_type, actions, load_order, is_async, active, "
            "filter_field, filter_value) "
            "VALUES (:class_identifier, :entity_type, :actions, :load_order, :is_async, :active, "
            ":filter_field, :filter_value)",
            {
                "class_identifier": descriptor.class_identifier,
                "entity_type": descriptor.entity_type,
                "actions": _format_actions(descriptor.actions),
                "load_order": descriptor.load_order,
                "is_async": descriptor.asynchronous,
                "active": descriptor.active,
                "filter_field": descriptor.filter_field,
                "filter_value": descriptor.filter_value,
            },
        )


def _format_actions(actions: Iterable[Action]) -> str:
    # Stable order so stored values are comparable
    order = list(Action)
    return ACTION_SEPARATOR.join(a.value for a in sorted(actions, key=order.index))


def _parse_actions(raw: str | None) -> frozenset[Action]:
    if not raw:
        return frozenset()
    actions = set()
    for name in raw.split(ACTION_SEPARATOR):
        name = name.strip()
        if not name:
            continue
        try:
            actions.add(Action(name))
        except ValueError:
            logger.warning("Ignoring unknown action %r in trigger handler configuration", name)
    return frozenset(actions)


def _row_to_descriptor(row: dict) -> HandlerDescriptor:
    return HandlerDescriptor(
        class_identifier=row["class_identifier"],
        entity_type=row["entity_type"],
        actions=_parse_actions(row["actions"]),
        load_order=int(row["load_order"] or 0),
        asynchronous=bool(row["is_async"]),
        active=bool(row["active"]),
        filter_field=row["filter_field"],
        filter_value=row["filter_value"],
    )


def _is_duplicate_key(exc: IntegrityError) -> bool:
    error_msg = str(exc.orig) if hasattr(exc, "orig") else str(exc)
    error_code = getattr(exc.orig, "args", [None])[0] if hasattr(exc, "orig") else None
    return (
        error_code == 1062  # MySQL ER_DUP_ENTRY
        or "Duplicate entry" in error_msg
        or "duplicate key" in error_msg.lower()
        or "UNIQUE constraint failed" in error_msg
    )


def _handler_table(metadata: MetaData, name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("class_identifier", String(255), nullable=False),
        Column("entity_type", String(255), nullable=False),
        Column("actions", String(255), nullable=False),
        Column("load_order", Integer, nullable=False, default=0),
        Column("is_async", Boolean, nullable=False, default=False),
        Column("active", Boolean, nullable=False, default=True),
        Column("filter_field", String(255), nullable=True),
        Column("filter_value", String(255), nullable=True),
        UniqueConstraint("entity_type", "class_identifier", name=f"uq_{name}_entity_class"),
    )
