from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from triggerkit.actions import Action
from triggerkit.batch import WriteBatch
from triggerkit.config import DbConfig, DispatchConfig
from triggerkit.db.session import DbSession
from triggerkit.dispatcher import DispatchState, TriggerDispatcher
from triggerkit.error_handler import ErrorHandler
from triggerkit.errors import BatchWriteError, TriggerRejected
from triggerkit.handlers import HandlerCatalog, TriggerHandler
from triggerkit.invoker import HandlerInvoker
from triggerkit.models import EntityRecord, EntityType, HandlerDescriptor
from triggerkit.registry import InMemoryHandlerRegistry, SqlHandlerRegistry

CONTACT = EntityType(name="Contact", table="contact")

AFTER_INSERT = dict(is_before=False, is_after=True, is_insert=True, is_update=False, is_delete=False, is_undelete=False)
AFTER_UPDATE = dict(is_before=False, is_after=True, is_insert=False, is_update=True, is_delete=False, is_undelete=False)
AFTER_DELETE = dict(is_before=False, is_after=True, is_insert=False, is_update=False, is_delete=True, is_undelete=False)


class PrimaryContacts(TriggerHandler):
    """Creates two contacts per new account."""

    def run(self, new_records, old_records, action, entity_type):
        batch = WriteBatch()
        for account in new_records:
            batch.insert(
                [
                    EntityRecord(CONTACT, {"name": f"{account.get('name')} primary", "account_id": account.id}),
                    EntityRecord(CONTACT, {"name": f"{account.get('name')} billing", "account_id": account.id}),
                ]
            )
        return batch


class SecondaryContacts(TriggerHandler):
    def run(self, new_records, old_records, action, entity_type):
        return WriteBatch().insert(
            [EntityRecord(CONTACT, {"name": "secondary", "account_id": a.id}) for a in new_records]
        )


class MarkCustomer(TriggerHandler):
    def run(self, new_records, old_records, action, entity_type):
        return WriteBatch().update(
            [EntityRecord(entity_type, {"status": "customer"}, id=a.id) for a in new_records]
        )


class NamelessContact(TriggerHandler):
    def run(self, new_records, old_records, action, entity_type):
        return WriteBatch().insert([EntityRecord(CONTACT, {"name": None})])


class Exploding(TriggerHandler):
    def run(self, new_records, old_records, action, entity_type):
        raise ValueError("handler exploded")


class ReturnsNothing(TriggerHandler):
    def run(self, new_records, old_records, action, entity_type):
        return None


@pytest.fixture
def catalog() -> HandlerCatalog:
    catalog = HandlerCatalog()
    for cls in (PrimaryContacts, SecondaryContacts, MarkCustomer, NamelessContact, Exploding, ReturnsNothing):
        catalog.register(cls.__name__, cls)
    return catalog


@pytest.fixture
def make_dispatcher(catalog, engine):
    def _make(*class_identifiers, config=None, actions=(Action.AFTER_INSERT,), registry=None, scheduler=None, asynchronous=False):
        config = config or DispatchConfig()
        error_handler = ErrorHandler(DbConfig(), config)
        error_handler.create_schema(engine)
        if registry is None:
            registry = InMemoryHandlerRegistry(
                [
                    HandlerDescriptor(key, "Account", set(actions), load_order=i, asynchronous=asynchronous)
                    for i, key in enumerate(class_identifiers)
                ]
            )
        return TriggerDispatcher(
            registry,
            HandlerInvoker(catalog, scheduler),
            error_handler=error_handler,
            config=config,
        )

    return _make


@pytest.fixture
def accounts(engine, entity_tables, account_type) -> list[EntityRecord]:
    """Two committed accounts, as an AfterInsert trigger would see them."""
    records = []
    with DbSession(engine) as session:
        for name in ("Acme", "Globex"):
            record = EntityRecord(account_type, {"name": name, "status": None})
            record.id = session.execute_insert("INSERT INTO account (name) VALUES (:name)", {"name": name})
            records.append(record)
    return records


def _stored_errors(engine) -> list:
    with DbSession(engine) as session:
        return ErrorHandler().fetch_all(session)


def test_after_insert_commits_handler_inserts(engine, make_dispatcher, accounts, account_type, read_rows) -> None:
    dispatcher = make_dispatcher("PrimaryContacts")

    with DbSession(engine) as session:
        state = dispatcher.dispatch(**AFTER_INSERT, new_records=accounts[:1], old_records=None,
                                    entity_type=account_type, session=session)

    assert state is DispatchState.SUCCESS
    assert [r["name"] for r in read_rows("contact")] == ["Acme primary", "Acme billing"]
    assert _stored_errors(engine) == []


def test_handler_order_is_preserved_in_commit(engine, make_dispatcher, accounts, account_type, read_rows) -> None:
    dispatcher = make_dispatcher("SecondaryContacts", "PrimaryContacts")

    with DbSession(engine) as session:
        dispatcher.dispatch(**AFTER_INSERT, new_records=accounts, old_records=[],
                            entity_type=account_type, session=session)

    assert [r["name"] for r in read_rows("contact")] == [
        "secondary",
        "secondary",
        "Acme primary",
        "Acme billing",
        "Globex primary",
        "Globex billing",
    ]


def test_handler_exception_rolls_back_and_records_error(engine, make_dispatcher, accounts, account_type, read_rows) -> None:
    dispatcher = make_dispatcher("MarkCustomer", "Exploding", actions=(Action.AFTER_UPDATE,))

    with DbSession(engine) as session:
        state = dispatcher.dispatch(**AFTER_UPDATE, new_records=accounts, old_records=accounts,
                                    entity_type=account_type, session=session)

    assert state is DispatchState.ROLLED_BACK
    assert [r["status"] for r in read_rows("account")] == [None, None]
    (error,) = _stored_errors(engine)
    assert error.context == "TriggerDispatcher:Account.AfterUpdate"
    assert error.message == "handler exploded"
    assert error.error_type == "ValueError"


def test_write_failure_rolls_back_every_write(engine, make_dispatcher, accounts, account_type, read_rows) -> None:
    dispatcher = make_dispatcher("PrimaryContacts", "MarkCustomer", "NamelessContact")

    with DbSession(engine) as session:
        state = dispatcher.dispatch(**AFTER_INSERT, new_records=accounts, old_records=[],
                                    entity_type=account_type, session=session)

    assert state is DispatchState.ROLLED_BACK
    assert read_rows("contact") == []
    assert [r["status"] for r in read_rows("account")] == [None, None]
    (error,) = _stored_errors(engine)
    assert error.operation == "insert"
    assert error.record_index == 4  # after the four PrimaryContacts inserts


def test_disabled_error_handling_reraises_write_failure(engine, make_dispatcher, accounts, account_type, read_rows) -> None:
    dispatcher = make_dispatcher("PrimaryContacts", "NamelessContact",
                                 config=DispatchConfig(error_handling_disabled=True))

    with DbSession(engine) as session:
        with pytest.raises(BatchWriteError):
            dispatcher.dispatch(**AFTER_INSERT, new_records=accounts[:1], old_records=[],
                                entity_type=account_type, session=session)

    assert [r["name"] for r in read_rows("contact")] == ["Acme primary", "Acme billing"]
    assert _stored_errors(engine) == []


def test_disabled_error_handling_reraises_original_exception(engine, make_dispatcher, accounts, account_type) -> None:
    dispatcher = make_dispatcher("Exploding", config=DispatchConfig(error_handling_disabled=True))

    with DbSession(engine) as session:
        with pytest.raises(ValueError, match="handler exploded"):
            dispatcher.dispatch(**AFTER_INSERT, new_records=accounts, old_records=[],
                                entity_type=account_type, session=session)

    assert _stored_errors(engine) == []


def test_invalid_flags_are_captured(engine, make_dispatcher, accounts, account_type) -> None:
    dispatcher = make_dispatcher("PrimaryContacts")
    flags = dict(AFTER_INSERT, is_update=True)

    with DbSession(engine) as session:
        state = dispatcher.dispatch(**flags, new_records=accounts, old_records=[],
                                    entity_type=account_type, session=session)

    assert state is DispatchState.ROLLED_BACK
    (error,) = _stored_errors(engine)
    assert error.error_type == "InvalidActionState"
    assert error.context == "TriggerDispatcher:Account.unresolved"


def test_propagation_attaches_error_to_first_new_record(engine, make_dispatcher, accounts, account_type) -> None:
    dispatcher = make_dispatcher("Exploding", config=DispatchConfig(propagate_errors=True))

    with DbSession(engine) as session:
        with pytest.raises(TriggerRejected, match="handler exploded"):
            dispatcher.dispatch(**AFTER_INSERT, new_records=accounts, old_records=[],
                                entity_type=account_type, session=session)

    assert accounts[0].errors == ["handler exploded"]
    assert accounts[1].errors == []
    assert len(_stored_errors(engine)) == 1


def test_propagation_falls_back_to_old_records(engine, make_dispatcher, accounts, account_type) -> None:
    dispatcher = make_dispatcher("Exploding", config=DispatchConfig(propagate_errors=True),
                                 actions=(Action.AFTER_DELETE,))

    with DbSession(engine) as session:
        with pytest.raises(TriggerRejected):
            dispatcher.dispatch(**AFTER_DELETE, new_records=None, old_records=accounts,
                                entity_type=account_type, session=session)

    assert accounts[0].errors == ["handler exploded"]


def test_propagation_of_write_failures(engine, make_dispatcher, accounts, account_type, read_rows) -> None:
    dispatcher = make_dispatcher("PrimaryContacts", "NamelessContact", config=DispatchConfig(propagate_errors=True))

    with DbSession(engine) as session:
        with pytest.raises(TriggerRejected):
            dispatcher.dispatch(**AFTER_INSERT, new_records=accounts, old_records=[],
                                entity_type=account_type, session=session)

    assert len(accounts[0].errors) == 1
    assert read_rows("contact") == []


def test_skipped_and_empty_handlers_do_not_stop_dispatch(engine, make_dispatcher, accounts, account_type, read_rows) -> None:
    dispatcher = make_dispatcher("Missing", "ReturnsNothing", "SecondaryContacts")

    with DbSession(engine) as session:
        state = dispatcher.dispatch(**AFTER_INSERT, new_records=accounts[:1], old_records=[],
                                    entity_type=account_type, session=session)

    assert state is DispatchState.SUCCESS
    assert [r["name"] for r in read_rows("contact")] == ["secondary"]


def test_no_handlers_skips_commit(engine, make_dispatcher, accounts, account_type) -> None:
    dispatcher = make_dispatcher()
    dispatcher.committer = MagicMock()

    with DbSession(engine) as session:
        state = dispatcher.dispatch(**AFTER_INSERT, new_records=accounts, old_records=[],
                                    entity_type=account_type, session=session)

    assert state is DispatchState.SUCCESS
    dispatcher.committer.commit.assert_not_called()


def test_disable_all_triggers(engine, make_dispatcher, accounts, account_type) -> None:
    registry = MagicMock()
    dispatcher = make_dispatcher(config=DispatchConfig(disable_all_triggers=True), registry=registry)

    with DbSession(engine) as session:
        state = dispatcher.dispatch(**AFTER_INSERT, new_records=accounts, old_records=[],
                                    entity_type=account_type, session=session)

    assert state is DispatchState.SKIPPED
    registry.get_handlers_for.assert_not_called()


def test_async_handler_is_scheduled(engine, make_dispatcher, accounts, account_type, read_rows) -> None:
    scheduler = MagicMock()
    dispatcher = make_dispatcher("PrimaryContacts", scheduler=scheduler, asynchronous=True)

    with DbSession(engine) as session:
        state = dispatcher.dispatch(**AFTER_INSERT, new_records=accounts, old_records=[],
                                    entity_type=account_type, session=session)

    assert state is DispatchState.SUCCESS
    assert read_rows("contact") == []
    scheduler.schedule.assert_called_once_with(
        new_ids={a.id for a in accounts},
        old_ids=set(),
        action_name="AfterInsert",
        entity_type_name="Account",
        class_identifier="PrimaryContacts",
    )


def test_defaults_seeded_once_across_dispatches(engine, make_dispatcher, accounts, account_type, read_rows) -> None:
    registry = InMemoryHandlerRegistry(
        defaults=[HandlerDescriptor("SecondaryContacts", "Account", {Action.AFTER_INSERT})]
    )
    dispatcher = make_dispatcher(registry=registry)

    for _ in range(2):
        with DbSession(engine) as session:
            dispatcher.dispatch(**AFTER_INSERT, new_records=accounts[:1], old_records=[],
                                entity_type=account_type, session=session)

    assert registry.seed_count == 1
    assert [r["name"] for r in read_rows("contact")] == ["secondary", "secondary"]


def test_sql_registry_seeded_on_first_dispatch(engine, make_dispatcher, accounts, account_type, read_rows) -> None:
    registry = SqlHandlerRegistry(
        engine,
        DbConfig(),
        defaults=[HandlerDescriptor("SecondaryContacts", "Account", {Action.AFTER_INSERT})],
    )
    registry.create_schema()
    dispatcher = make_dispatcher(registry=registry)

    for _ in range(2):
        with DbSession(engine) as session:
            dispatcher.dispatch(**AFTER_INSERT, new_records=accounts[:1], old_records=[],
                                entity_type=account_type, session=session)

    assert len(registry.get_handlers_for("Account", Action.AFTER_INSERT)) == 1
    assert len(read_rows("contact")) == 2


def test_registry_override_per_call(engine, make_dispatcher, accounts, account_type, read_rows) -> None:
    dispatcher = make_dispatcher("PrimaryContacts")
    override = InMemoryHandlerRegistry([HandlerDescriptor("SecondaryContacts", "Account", {Action.AFTER_INSERT})])

    with DbSession(engine) as session:
        dispatcher.dispatch(**AFTER_INSERT, new_records=accounts[:1], old_records=[],
                            entity_type=account_type, session=session, registry=override)

    assert [r["name"] for r in read_rows("contact")] == ["secondary"]


def test_sql_registry_seeds_through_a_session_that_already_wrote(
    engine, make_dispatcher, entity_tables, account_type, read_rows
) -> None:
    registry = SqlHandlerRegistry(
        engine,
        DbConfig(),
        defaults=[HandlerDescriptor("SecondaryContacts", "Account", {Action.AFTER_INSERT})],
    )
    registry.create_schema()
    dispatcher = make_dispatcher(registry=registry)

    with DbSession(engine) as session:
        account = EntityRecord(account_type, {"name": "Initech"})
        account.id = session.execute_insert("INSERT INTO account (name) VALUES ('Initech')")
        state = dispatcher.dispatch(**AFTER_INSERT, new_records=[account], old_records=[],
                                    entity_type=account_type, session=session)

    assert state is DispatchState.SUCCESS
    assert [r["name"] for r in read_rows("contact")] == ["secondary"]
    assert _stored_errors(engine) == []


def test_seeded_defaults_survive_a_rolled_back_dispatch(
    engine, make_dispatcher, accounts, account_type
) -> None:
    registry = SqlHandlerRegistry(
        engine,
        DbConfig(),
        defaults=[HandlerDescriptor("Exploding", "Account", {Action.AFTER_INSERT})],
    )
    registry.create_schema()
    dispatcher = make_dispatcher(registry=registry)

    with DbSession(engine) as session:
        state = dispatcher.dispatch(**AFTER_INSERT, new_records=accounts[:1], old_records=[],
                                    entity_type=account_type, session=session)

    assert state is DispatchState.ROLLED_BACK
    assert not registry.is_empty()
