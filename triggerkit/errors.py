class TriggerKitError(Exception):
    """Base exception for triggerkit errors."""


class InvalidActionState(TriggerKitError):
    """Trigger context flags do not describe exactly one action."""


class HandlerConfigError(TriggerKitError):
    """A handler descriptor does not resolve to a usable handler."""


class DbWriteError(TriggerKitError):
    """Any failure during DB write."""


class BatchWriteError(DbWriteError):
    """One or more records in a committed batch failed to write."""

    def __init__(self, message: str, errors=None) -> None:
        super().__init__(message)
        self.errors = errors


class TriggerRejected(TriggerKitError):
    """The dispatch failed and the failure was attached to the triggering records."""


class QueueError(TriggerKitError):
    """General queue-related issues."""
