from __future__ import annotations

import os
from dataclasses import dataclass

from .db.helpers import _validate_identifier

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass
class DbConfig:
    handler_table: str = "trigger_handler"
    error_table: str = "trigger_error_log"

    def __post_init__(self) -> None:
        """Validate table and column names before they are interpolated into SQL."""
        _validate_identifier(self.handler_table, "handler_table")
        _validate_identifier(self.error_table, "error_table")


@dataclass
class DispatchConfig:
    """
    Runtime switches for TriggerDispatcher.

    error_handling_disabled: failures propagate to the caller instead of being
        rolled back and recorded in the error table.
    propagate_errors: captured failures are also attached to the first
        triggering record and TriggerRejected is raised.
    disable_all_triggers: dispatch() returns without running any handler.
    """

    error_handling_disabled: bool = False
    propagate_errors: bool = False
    disable_all_triggers: bool = False

    @classmethod
    def from_env(cls) -> "DispatchConfig":
        return cls(
            error_handling_disabled=_env_flag("TRIGGERKIT_ERROR_HANDLING_DISABLED"),
            propagate_errors=_env_flag("TRIGGERKIT_PROPAGATE_ERRORS"),
            disable_all_triggers=_env_flag("TRIGGERKIT_DISABLE_ALL_TRIGGERS"),
        )


@dataclass
class QueueConfig:
    stream_key: str
    consumer_group: str
    consumer_name: str
    claim_idle_ms: int = 60_000
    block_ms: int = 5_000
    max_read_count: int = 1

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.block_ms <= 0:
            raise ValueError(
                "block_ms must be > 0; Redis interprets 0 as infinite blocking"
            )
        if self.max_read_count <= 0:
            raise ValueError("max_read_count must be > 0")
