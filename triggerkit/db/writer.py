from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from ..batch import WriteKind
from ..models import EntityRecord
from .helpers import (
    build_delete_sql,
    build_insert_sql,
    build_soft_delete_sql,
    build_update_sql,
)
from .metrics import observe_db_write
from .tx import DbTx

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """Outcome of writing one record."""

    kind: WriteKind
    index: int
    record: EntityRecord
    success: bool
    error: Optional[str] = None
    exception: Optional[BaseException] = None


class RecordWriter:
    """
    Best-effort per-record writer.

    Every record in a group is attempted. Each write runs inside its own
    savepoint so a failing statement is undone on its own and the remaining
    records still get written. Failures are returned, never raised.

    Invariants checked before touching the database:
    - inserted records must not have an identity yet
    - updated, deleted and undeleted records must have one
    - undelete requires an entity type with a soft-delete column

    Usage:
        writer = RecordWriter(session)
        results = writer.write_all(WriteKind.INSERT, batch.to_insert)
        failed = [r for r in results if not r.success]
    """

    def __init__(self, session: DbTx) -> None:
        self.session = session

    def write_all(self, kind: WriteKind, records: Sequence[EntityRecord]) -> list[WriteResult]:
        kind = WriteKind(kind)
        return [self.write(kind, index, record) for index, record in enumerate(records)]

    def write(self, kind: WriteKind, index: int, record: EntityRecord) -> WriteResult:
        start_time = time.monotonic()
        table = record.entity_type.table

        problem = self._check_identity(kind, record)
        if problem is not None:
            observe_db_write(table, kind.value, "error", time.monotonic() - start_time)
            return WriteResult(kind=kind, index=index, record=record, success=False, error=problem)

        savepoint = self.session.savepoint()
        try:
            self._apply(kind, record)
        except Exception as exc:
            savepoint.rollback()
            logger.debug(
                "%s of %s record %d failed: %s", kind.value, record.entity_type.name, index, exc
            )
            observe_db_write(table, kind.value, "error", time.monotonic() - start_time)
            return WriteResult(
                kind=kind,
                index=index,
                record=record,
                success=False,
                error=str(exc),
                exception=exc,
            )

        savepoint.release()
        observe_db_write(table, kind.value, "success", time.monotonic() - start_time)
        return WriteResult(kind=kind, index=index, record=record, success=True)

    @staticmethod
    def _check_identity(kind: WriteKind, record: EntityRecord) -> str | None:
        if kind == WriteKind.INSERT:
            if record.has_identity:
                return f"Cannot insert a record that already has an id ({record.id!r})"
            return None

        if not record.has_identity:
            return f"Cannot {kind.value} a record without an id"

        if kind == WriteKind.UNDELETE and not record.entity_type.supports_undelete:
            return f"Entity type {record.entity_type.name} does not support undelete"

        return None

    def _apply(self, kind: WriteKind, record: EntityRecord) -> None:
        entity_type = record.entity_type

        if kind == WriteKind.INSERT:
            sql = build_insert_sql(entity_type.table, record.fields, self.session.dialect_name)
            record.id = self.session.execute_insert(sql, record.fields)
            return

        params = {"id_value": record.id}

        if kind == WriteKind.UPDATE:
            sql = build_update_sql(entity_type.table, entity_type.id_column, record.fields.keys())
            if sql is None:
                return  # nothing to update
            params.update(
                {k: v for k, v in record.fields.items() if k != entity_type.id_column}
            )
        elif kind == WriteKind.DELETE and entity_type.soft_delete_column is None:
            sql = build_delete_sql(entity_type.table, entity_type.id_column)
        else:
            sql = build_soft_delete_sql(
                entity_type.table,
                entity_type.id_column,
                entity_type.soft_delete_column,
                deleted=(kind == WriteKind.DELETE),
            )

        rowcount = self.session.execute(sql, params)
        if rowcount == 0:
            raise LookupError(
                f"No {entity_type.name} row with {entity_type.id_column}={record.id!r} to {kind.value}"
            )
