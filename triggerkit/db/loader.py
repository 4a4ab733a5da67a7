from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import bindparam, text

from ..models import EntityRecord, EntityType
from .tx import DbTx


class RecordLoader:
    """
    Loads entity records by id.

    Used by deferred handler execution, which receives ids only and has to
    read the current state of the records in its own transaction. Records are
    returned in ascending id order; ids with no row are skipped.
    """

    def __init__(self, session: DbTx) -> None:
        self.session = session

    def load(self, entity_type: EntityType, ids: Iterable[Any]) -> list[EntityRecord]:
        id_list = list(set(ids))
        if not id_list:
            return []

        stmt = text(
            f"SELECT * FROM {entity_type.table} "
            f"WHERE {entity_type.id_column} IN :ids "
            f"ORDER BY {entity_type.id_column}"
        ).bindparams(bindparam("ids", expanding=True))

        rows = self.session.fetch_all(stmt, {"ids": id_list})
        return [EntityRecord.from_row(entity_type, row) for row in rows]
