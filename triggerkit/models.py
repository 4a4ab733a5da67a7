from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .actions import Action
from .db.helpers import _validate_identifier


@dataclass(frozen=True)
class EntityType:
    """
    Describes the table backing one business entity type.

    If soft_delete_column is set, deletes and undeletes flip that column
    instead of removing rows, and only soft-deleted rows can be undeleted.
    """

    name: str
    table: str
    id_column: str = "id"
    soft_delete_column: Optional[str] = None

    def __post_init__(self) -> None:
        _validate_identifier(self.table, "table")
        _validate_identifier(self.id_column, "id_column")
        if self.soft_delete_column is not None:
            _validate_identifier(self.soft_delete_column, "soft_delete_column")

    @property
    def supports_undelete(self) -> bool:
        return self.soft_delete_column is not None


@dataclass(eq=False)
class EntityRecord:
    """
    One row of an entity type, as seen by handlers.

    id is None until the record has been inserted.
    errors collects messages attached when a dispatch rejects the record.
    """

    entity_type: EntityType
    fields: dict[str, Any] = field(default_factory=dict)
    id: Any = None
    errors: list[str] = field(default_factory=list)

    @property
    def has_identity(self) -> bool:
        return self.id is not None

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    @classmethod
    def from_row(cls, entity_type: EntityType, row: Mapping[str, Any]) -> "EntityRecord":
        fields = dict(row)
        id_value = fields.pop(entity_type.id_column, None)
        return cls(entity_type=entity_type, fields=fields, id=id_value)


@dataclass(frozen=True)
class HandlerDescriptor:
    """
    Configuration of one handler for one entity type.

    Descriptors are read-only to the dispatcher. Records whose filter_field
    value equals filter_value are hidden from the handler.
    """

    class_identifier: str
    entity_type: str
    actions: frozenset[Action]
    load_order: int = 0
    asynchronous: bool = False
    active: bool = True
    filter_field: Optional[str] = None
    filter_value: Optional[str] = None

    def __post_init__(self) -> None:
        # Accept any iterable of Action members or action names
        object.__setattr__(self, "actions", frozenset(Action(a) for a in self.actions))

    def applies_to(self, entity_type_name: str, action: Action) -> bool:
        return self.active and self.entity_type == entity_type_name and action in self.actions
