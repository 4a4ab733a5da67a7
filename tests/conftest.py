from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, event
from sqlalchemy.engine import Engine

from triggerkit.config import DbConfig, DispatchConfig
from triggerkit.db.session import DbSession
from triggerkit.error_handler import ErrorHandler
from triggerkit.models import EntityType


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """
    Database URL for unit tests.

    Defaults to a per-test SQLite file. Set TRIGGERKIT_TEST_DB_URL to run
    against another database.
    """
    return os.environ.get("TRIGGERKIT_TEST_DB_URL", f"sqlite:///{tmp_path / 'triggerkit.db'}")


@pytest.fixture
def engine(db_url: str) -> Iterator[Engine]:
    eng = create_engine(db_url)

    if eng.dialect.name == "sqlite":
        # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN.
        @event.listens_for(eng, "connect")
        def _do_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(eng, "begin")
        def _do_begin(conn):
            conn.exec_driver_sql("BEGIN")

    yield eng
    eng.dispose()


@pytest.fixture
def entity_tables(engine: Engine) -> Iterator[None]:
    """
    account: soft-deletable parent entity.
    contact: child entity; name is NOT NULL so a contact without a name fails to write.
    """
    metadata = MetaData()
    Table(
        "account",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("name", String(255), nullable=False),
        Column("status", String(50), nullable=True),
        Column("is_deleted", Integer, nullable=False, default=0, server_default="0"),
    )
    Table(
        "contact",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("account_id", Integer, nullable=True),
        Column("name", String(255), nullable=False),
    )
    metadata.create_all(engine)
    yield
    metadata.drop_all(engine)


@pytest.fixture
def account_type() -> EntityType:
    return EntityType(name="Account", table="account", soft_delete_column="is_deleted")


@pytest.fixture
def contact_type() -> EntityType:
    return EntityType(name="Contact", table="contact")


@pytest.fixture
def dispatch_config() -> DispatchConfig:
    return DispatchConfig()


@pytest.fixture
def error_handler(engine: Engine, dispatch_config: DispatchConfig) -> ErrorHandler:
    handler = ErrorHandler(DbConfig(), dispatch_config)
    handler.create_schema(engine)
    return handler


@pytest.fixture
def read_rows(engine: Engine):
    """Read all rows of a table in a fresh session."""

    def _read(table: str) -> list[dict]:
        with DbSession(engine) as session:
            return session.fetch_all(f"SELECT * FROM {table} ORDER BY id")

    return _read
