from __future__ import annotations

from triggerkit.db.loader import RecordLoader
from triggerkit.db.session import DbSession


def test_load_by_ids(engine, entity_tables, account_type) -> None:
    with DbSession(engine) as session:
        ids = [
            session.execute_insert("INSERT INTO account (name) VALUES (:name)", {"name": n})
            for n in ("a", "b", "c")
        ]

    with DbSession(engine) as session:
        records = RecordLoader(session).load(account_type, {ids[2], ids[0], 9999})

    assert [r.id for r in records] == [ids[0], ids[2]]
    assert records[0].get("name") == "a"
    assert "id" not in records[0].fields
    assert records[0].entity_type is account_type


def test_load_no_ids(engine, entity_tables, account_type) -> None:
    with DbSession(engine) as session:
        assert RecordLoader(session).load(account_type, set()) == []
