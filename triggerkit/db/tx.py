from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql.elements import TextClause

from .session import Savepoint, _SqlOps

logger = logging.getLogger(__name__)


class DbTx(Protocol):
    """
    Protocol for database transactions with explicit commit/rollback.

    Used by QueueConsumer's run() template method and by DeferredWorker,
    which gives every deferred handler execution its own transaction.
    """

    @property
    def dialect_name(self) -> str:
        """Name of the SQLAlchemy dialect, e.g. "mysql" or "sqlite"."""
        ...

    def commit(self) -> None:
        """Commit the transaction."""
        ...

    def rollback(self) -> None:
        """Rollback the transaction."""
        ...

    def savepoint(self) -> Savepoint:
        """Open a savepoint inside the transaction."""
        ...

    def execute(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """Execute a non-SELECT statement and return affected row count."""
        ...

    def execute_insert(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Execute an INSERT and return the generated primary key."""
        ...

    def execute_scalar(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Execute a statement expected to return a single scalar value."""
        ...

    def fetch_one(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Execute a SELECT expected to return 0 or 1 row."""
        ...

    def fetch_all(
        self,
        sql: str | TextClause,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Execute a SELECT returning multiple rows."""
        ...


class DbTransaction(_SqlOps):
    """
    A transaction that begins on construction and ends with an explicit
    commit() or rollback(), after which its connection is closed.

    DeferredWorker runs every queued handler execution in one of these, so a
    failed run never leaves partial writes behind. Open a new one per
    attempt; a closed transaction cannot be reused.

    Usage:
        tx = DbFactory(engine).begin()
        try:
            committer.commit(batch, tx)
            tx.commit()
        except Exception:
            tx.rollback()
            raise
    """

    def __init__(self, engine: Engine) -> None:
        """
        Initialize and begin a new transaction.

        Args:
            engine: SQLAlchemy Engine instance
        """
        self.engine = engine
        self._closed = False
        self._conn: Connection | None = self.engine.connect()
        self._tx = self._conn.begin()

    def _connection(self) -> Connection:
        """Get the active connection, raising if closed."""
        if self._closed or self._conn is None:
            raise RuntimeError("Transaction is already closed")
        return self._conn

    def _close(self) -> None:
        self._closed = True
        if self._conn is not None:
            self._conn.close()
        self._conn = None
        self._tx = None

    def commit(self) -> None:
        """
        Commit the transaction and close the connection.

        Raises:
            RuntimeError: If transaction is already closed
        """
        if self._closed:
            raise RuntimeError("Transaction is already closed")

        try:
            if self._tx is not None:
                self._tx.commit()
        except Exception:
            # Best-effort rollback on commit failure; the commit error wins
            try:
                if self._tx is not None:
                    self._tx.rollback()
            except Exception:
                logger.debug("Rollback after failed commit also failed", exc_info=True)
            raise
        finally:
            self._close()

    def rollback(self) -> None:
        """
        Rollback the transaction and close the connection.

        Raises:
            RuntimeError: If transaction is already closed
        """
        if self._closed:
            raise RuntimeError("Transaction is already closed")

        try:
            if self._tx is not None:
                self._tx.rollback()
        finally:
            self._close()


class DbFactory:
    """Opens DbTransactions on one engine; handed to QueueConsumer.run()."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def begin(self) -> DbTransaction:
        """
        Begin a new transaction.

        Returns:
            A new DbTransaction instance with an active transaction
        """
        return DbTransaction(self.engine)
