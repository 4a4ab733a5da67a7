from __future__ import annotations

from enum import Enum
from typing import Iterable, Iterator

from .models import EntityRecord


class WriteKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UNDELETE = "undelete"


# Order in which kinds are committed
WRITE_ORDER = (WriteKind.INSERT, WriteKind.UPDATE, WriteKind.DELETE, WriteKind.UNDELETE)


class WriteBatch:
    """
    Proposed writes collected from handlers.

    Holds one ordered list per WriteKind. Entries are only ever appended;
    nothing is deduplicated. Handlers return a WriteBatch from run() and the
    dispatcher merges them into one aggregate that is committed once.

    Usage:
        batch = WriteBatch()
        batch.insert([EntityRecord(contact_type, {"name": "Ada"})])
        batch.update([account])
    """

    def __init__(self) -> None:
        self._records: dict[WriteKind, list[EntityRecord]] = {kind: [] for kind in WRITE_ORDER}

    @property
    def to_insert(self) -> list[EntityRecord]:
        return self._records[WriteKind.INSERT]

    @property
    def to_update(self) -> list[EntityRecord]:
        return self._records[WriteKind.UPDATE]

    @property
    def to_delete(self) -> list[EntityRecord]:
        return self._records[WriteKind.DELETE]

    @property
    def to_undelete(self) -> list[EntityRecord]:
        return self._records[WriteKind.UNDELETE]

    def records(self, kind: WriteKind) -> list[EntityRecord]:
        return self._records[WriteKind(kind)]

    def append(self, kind: WriteKind, records: Iterable[EntityRecord]) -> "WriteBatch":
        self._records[WriteKind(kind)].extend(records)
        return self

    def insert(self, records: Iterable[EntityRecord]) -> "WriteBatch":
        return self.append(WriteKind.INSERT, records)

    def update(self, records: Iterable[EntityRecord]) -> "WriteBatch":
        return self.append(WriteKind.UPDATE, records)

    def delete(self, records: Iterable[EntityRecord]) -> "WriteBatch":
        return self.append(WriteKind.DELETE, records)

    def undelete(self, records: Iterable[EntityRecord]) -> "WriteBatch":
        return self.append(WriteKind.UNDELETE, records)

    def merge(self, other: "WriteBatch") -> "WriteBatch":
        """Append other's entries after this batch's entries, kind by kind."""
        for kind, records in other.items():
            self._records[kind].extend(records)
        return self

    def group_by_type(self) -> "WriteBatch":
        """
        Checkpoint run before commit.

        Verifies every entry is an EntityRecord and keeps each kind's order
        as submitted. Calling it repeatedly leaves the batch unchanged.

        Raises:
            TypeError: If an entry is not an EntityRecord
        """
        for kind, records in self.items():
            for index, record in enumerate(records):
                if not isinstance(record, EntityRecord):
                    raise TypeError(
                        f"{kind.value} entry {index} is {type(record).__name__}, expected EntityRecord"
                    )
        return self

    def items(self) -> Iterator[tuple[WriteKind, list[EntityRecord]]]:
        for kind in WRITE_ORDER:
            yield kind, self._records[kind]

    @property
    def is_empty(self) -> bool:
        return not any(self._records.values())

    def __len__(self) -> int:
        return sum(len(records) for records in self._records.values())

    def summary(self) -> str:
        return ", ".join(f"{kind.value}={len(records)}" for kind, records in self.items())

    def __repr__(self) -> str:
        return f"WriteBatch({self.summary()})"
