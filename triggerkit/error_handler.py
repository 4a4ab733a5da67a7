from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text, bindparam, text
from sqlalchemy.engine import Engine

from .config import DbConfig, DispatchConfig
from .db.tx import DbTx
from .db.writer import WriteResult
from .metrics.registry import ERROR_RECORDS_TOTAL

logger = logging.getLogger(__name__)


@dataclass
class ErrorRecord:
    """One captured failure, ready to be persisted."""

    context: str
    message: str
    error_type: str
    stack_trace: str = ""
    record_index: Optional[int] = None
    entity_type: Optional[str] = None
    operation: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        context: str,
        entity_type: Optional[str] = None,
    ) -> "ErrorRecord":
        return cls(
            context=context,
            message=str(exc) or type(exc).__name__,
            error_type=type(exc).__name__,
            stack_trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            entity_type=entity_type,
        )

    @classmethod
    def from_write_result(cls, result: WriteResult, context: str) -> "ErrorRecord":
        exc = result.exception
        stack_trace = ""
        if exc is not None:
            stack_trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(
            context=context,
            message=result.error or "unknown write failure",
            error_type=type(exc).__name__ if exc is not None else "WriteFailure",
            stack_trace=stack_trace,
            record_index=result.index,
            entity_type=result.record.entity_type.name,
            operation=result.kind.value,
        )


@dataclass
class Errors:
    """All failures from one commit."""

    records: list[ErrorRecord] = field(default_factory=list)

    @property
    def errors_exist(self) -> bool:
        return bool(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def summary(self) -> str:
        return "; ".join(
            f"{r.operation or 'error'} #{r.record_index}: {r.message}" for r in self.records
        )


class ErrorHandler:
    """
    Turns failures into ErrorRecords, logs them and persists them.

    Persisting writes to db_config.error_table through the session passed in,
    so callers must roll back their own savepoint first; otherwise the error
    rows would be undone together with the failed work. When error handling is
    disabled, records are logged but not persisted and the caller is expected
    to re-raise.

    Usage:
        handler = ErrorHandler(DbConfig(), DispatchConfig())
        handler.create_schema(engine)

        savepoint.rollback()
        handler.process_error(exc, "TriggerDispatcher:Account.AfterInsert", session)
    """

    def __init__(
        self,
        db_config: DbConfig | None = None,
        dispatch_config: DispatchConfig | None = None,
    ) -> None:
        self.db_config = db_config or DbConfig()
        self.dispatch_config = dispatch_config or DispatchConfig()
        self._table = _error_table(MetaData(), self.db_config.error_table)

    @property
    def enabled(self) -> bool:
        return not self.dispatch_config.error_handling_disabled

    def create_schema(self, engine: Engine) -> None:
        self._table.metadata.create_all(engine)

    def get_errors(self, results: Iterable[WriteResult], context: str = "BatchCommitter") -> Errors:
        """Collect every failed WriteResult into one Errors aggregate."""
        return Errors(
            records=[ErrorRecord.from_write_result(r, context) for r in results if not r.success]
        )

    def process_error(
        self,
        exc: BaseException,
        context: str,
        session: DbTx,
        entity_type: Optional[str] = None,
    ) -> ErrorRecord:
        record = ErrorRecord.from_exception(exc, context, entity_type=entity_type)
        self.process_errors([record], context, session)
        return record

    def process_errors(self, records: Sequence[ErrorRecord], context: str, session: DbTx) -> None:
        if not records:
            return

        for record in records:
            logger.error(
                "[%s] %s: %s (entity_type=%s operation=%s record_index=%s)",
                context,
                record.error_type,
                record.message,
                record.entity_type,
                record.operation,
                record.record_index,
            )
        self._notify(context, len(records))

        if not self.enabled:
            return

        stmt = text(
            f"INSERT INTO {self.db_config.error_table} "
            "(context, error_type, message, stack_trace, record_index, entity_type, operation, created_at) "
            "VALUES (:context, :error_type, :message, :stack_trace, :record_index, :entity_type, "
            ":operation, :created_at)"
        ).bindparams(bindparam("created_at", type_=DateTime(timezone=True)))
        for record in records:
            session.execute(
                stmt,
                {
                    "context": record.context,
                    "error_type": record.error_type,
                    "message": record.message,
                    "stack_trace": record.stack_trace,
                    "record_index": record.record_index,
                    "entity_type": record.entity_type,
                    "operation": record.operation,
                    "created_at": record.created_at,
                },
            )

    def fetch_all(self, session: DbTx) -> list[ErrorRecord]:
        stmt = text(
            "SELECT context, error_type, message, stack_trace, record_index, entity_type, "
            f"operation, created_at FROM {self.db_config.error_table} ORDER BY id"
        ).columns(created_at=DateTime(timezone=True))
        rows = session.fetch_all(stmt)
        return [ErrorRecord(**row) for row in rows]

    @staticmethod
    def _notify(context: str, count: int) -> None:
        try:
            ERROR_RECORDS_TOTAL.labels(context=context).inc(count)
        except Exception:
            logger.debug("Failed to record error metric for %s", context, exc_info=True)


def _error_table(metadata: MetaData, name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("context", String(255), nullable=False),
        Column("error_type", String(255), nullable=False),
        Column("message", Text, nullable=False),
        Column("stack_trace", Text, nullable=False, default=""),
        Column("record_index", Integer, nullable=True),
        Column("entity_type", String(255), nullable=True),
        Column("operation", String(32), nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=False),
    )
