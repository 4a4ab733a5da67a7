from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql import TextClause


class Savepoint:
    """
    A rollback point inside an active session or transaction.

    Must be closed exactly once with rollback() or release(). Used as a
    context manager it releases on success and rolls back on exception.

    Usage:
        sp = session.savepoint()
        try:
            session.execute(...)
        except Exception:
            sp.rollback()
            raise
        else:
            sp.release()
    """

    def __init__(self, conn: Connection) -> None:
        self._nested = conn.begin_nested()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def rollback(self) -> None:
        """Undo everything executed since the savepoint was opened."""
        if self._closed:
            raise RuntimeError("Savepoint is already closed")
        try:
            self._nested.rollback()
        finally:
            self._closed = True

    def release(self) -> None:
        """Keep everything executed since the savepoint was opened."""
        if self._closed:
            raise RuntimeError("Savepoint is already closed")
        try:
            self._nested.commit()
        finally:
            self._closed = True

    def __enter__(self) -> "Savepoint":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._closed:
            if exc_type:
                self.rollback()
            else:
                self.release()

        # propagate exceptions (if any)
        return False


class _SqlOps:
    """SQL execution helpers shared by DbSession and DbTransaction."""

    def _connection(self) -> Connection:
        raise NotImplementedError

    @property
    def dialect_name(self) -> str:
        return self._connection().dialect.name

    def savepoint(self) -> Savepoint:
        """Open a savepoint on the active connection."""
        return Savepoint(self._connection())

    def execute(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """
        Execute a non-SELECT statement and return affected row count.
        """
        conn = self._connection()
        stmt = text(sql) if isinstance(sql, str) else sql
        result = conn.execute(stmt, params or {})
        try:
            if result.rowcount is None:
                raise RuntimeError(
                    "execute() received None rowcount for statement. "
                    "This may indicate a DDL statement or unsupported operation type."
                )
            return int(result.rowcount)
        finally:
            result.close()

    def execute_insert(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Execute an INSERT and return the generated primary key.

        Relies on the driver's lastrowid (MySQL, SQLite). Returns None when the
        driver does not report one.
        """
        conn = self._connection()
        stmt = text(sql) if isinstance(sql, str) else sql
        result = conn.execute(stmt, params or {})
        try:
            return result.lastrowid
        finally:
            result.close()

    def execute_scalar(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Execute a statement expected to return a single scalar value.
        """
        conn = self._connection()
        stmt = text(sql) if isinstance(sql, str) else sql
        result = conn.execute(stmt, params or {})
        try:
            return result.scalar_one_or_none()
        finally:
            result.close()

    def fetch_one(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """
        Execute a SELECT expected to return 0 or 1 row. Raises if more than one row.
        """
        conn = self._connection()
        stmt = text(sql) if isinstance(sql, str) else sql
        result = conn.execute(stmt, params or {})
        try:
            row = result.mappings().one_or_none()
            if row is None:
                return None
            return dict(row)
        finally:
            result.close()

    def fetch_all(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a SELECT expected to return multiple rows.
        """
        conn = self._connection()
        stmt = text(sql) if isinstance(sql, str) else sql
        result = conn.execute(stmt, params or {})
        try:
            return [dict(row) for row in result.mappings()]
        finally:
            result.close()


class DbSession(_SqlOps):
    """
    Transactional wrapper around a SQLAlchemy Engine connection.

    This is the unit of work a dispatch runs in: the caller's own write and
    every handler write share it, and TriggerDispatcher places its rollback
    point on it with savepoint().

    Use as:
        with DbSession(engine) as session:
            session.execute(...)
            dispatcher.dispatch(..., session=session)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._conn: Connection | None = None
        self._tx = None

    def __enter__(self) -> "DbSession":
        if self._conn is not None:
            raise RuntimeError("DbSession is already active; nested sessions are not allowed")
        self._conn = self.engine.connect()
        self._tx = self._conn.begin()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self._tx is not None:
                if exc_type:
                    self._tx.rollback()
                else:
                    self._tx.commit()
        finally:
            if self._conn is not None:
                self._conn.close()

            self._conn = None
            self._tx = None

        # propagate exceptions (if any)
        return False

    def _connection(self) -> Connection:
        if self._conn is None:
            raise RuntimeError("DbSession is not active; use within a context manager")
        return self._conn
