"""
Execution context for the current thread or task.

Deferred handler work may not schedule further deferred work, and neither may
code running inside a batch-style job. Both mark themselves here so
HandlerInvoker can fall back to synchronous execution.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, Mapping, Optional

from .models import EntityType

if TYPE_CHECKING:
    from .committer import BatchCommitter
    from .db.loader import RecordLoader
    from .db.tx import DbTx


@dataclass
class DeferredRuntime:
    """What a deferred handler needs to load records and commit its own writes."""

    session: "DbTx"
    loader: "RecordLoader"
    committer: "BatchCommitter"
    entity_types: Mapping[str, EntityType]

    def entity_type(self, name: str) -> EntityType:
        try:
            return self.entity_types[name]
        except KeyError:
            raise LookupError(f"Unknown entity type {name!r}") from None


_deferred_runtime: ContextVar[Optional[DeferredRuntime]] = ContextVar(
    "triggerkit_deferred_runtime", default=None
)
_batch_depth: ContextVar[int] = ContextVar("triggerkit_batch_depth", default=0)


def current_runtime() -> DeferredRuntime:
    runtime = _deferred_runtime.get()
    if runtime is None:
        raise RuntimeError("No deferred runtime is active; run_deferred() must be called by DeferredWorker")
    return runtime


def in_deferred_context() -> bool:
    return _deferred_runtime.get() is not None or _batch_depth.get() > 0


@contextmanager
def deferred_context(runtime: DeferredRuntime) -> Iterator[DeferredRuntime]:
    token = _deferred_runtime.set(runtime)
    try:
        yield runtime
    finally:
        _deferred_runtime.reset(token)


@contextmanager
def batch_context() -> Iterator[None]:
    """Mark a batch-style job; deferred scheduling is disabled inside it."""
    token = _batch_depth.set(_batch_depth.get() + 1)
    try:
        yield
    finally:
        _batch_depth.reset(token)
