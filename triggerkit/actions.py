from __future__ import annotations

from enum import Enum

from .errors import InvalidActionState


class Action(str, Enum):
    BEFORE_INSERT = "BeforeInsert"
    AFTER_INSERT = "AfterInsert"
    BEFORE_UPDATE = "BeforeUpdate"
    AFTER_UPDATE = "AfterUpdate"
    BEFORE_DELETE = "BeforeDelete"
    AFTER_DELETE = "AfterDelete"
    BEFORE_UNDELETE = "BeforeUndelete"
    AFTER_UNDELETE = "AfterUndelete"

    @property
    def is_before(self) -> bool:
        return self.value.startswith("Before")

    @property
    def is_after(self) -> bool:
        return self.value.startswith("After")

    @property
    def operation(self) -> str:
        """Operation name without the timing prefix, e.g. "insert"."""
        prefix = "Before" if self.is_before else "After"
        return self.value[len(prefix):].lower()


# (is_before, operation) -> Action
_ACTION_TABLE: dict[tuple[bool, str], Action] = {
    (action.is_before, action.operation): action for action in Action
}


def resolve_action(
    is_before: bool,
    is_after: bool,
    is_insert: bool,
    is_update: bool,
    is_delete: bool,
    is_undelete: bool,
) -> Action:
    """
    Map trigger context flags to exactly one Action.

    Exactly one of is_before/is_after and exactly one of the four operation
    flags must be set.

    Raises:
        InvalidActionState: If the flags do not describe a single action
    """
    if bool(is_before) == bool(is_after):
        raise InvalidActionState(
            f"Exactly one of before/after must be set (before={is_before}, after={is_after})"
        )

    operations = [
        name
        for name, flag in (
            ("insert", is_insert),
            ("update", is_update),
            ("delete", is_delete),
            ("undelete", is_undelete),
        )
        if flag
    ]
    if len(operations) != 1:
        raise InvalidActionState(
            f"Exactly one operation flag must be set, got {operations or 'none'}"
        )

    return _ACTION_TABLE[(bool(is_before), operations[0])]
