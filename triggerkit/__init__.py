from .actions import Action, resolve_action
from .batch import WriteBatch, WriteKind
from .committer import BatchCommitter, CommitResult
from .config import DbConfig, DispatchConfig
from .dispatcher import DispatchState, TriggerDispatcher
from .error_handler import ErrorHandler, ErrorRecord, Errors
from .handlers import HandlerCatalog, TriggerHandler
from .invoker import HandlerInvoker
from .models import EntityRecord, EntityType, HandlerDescriptor
from .registry import HandlerRegistry, InMemoryHandlerRegistry, SqlHandlerRegistry

# Queue exports live in triggerkit.queue (requires redis)
__all__ = [
    "Action",
    "resolve_action",
    "WriteBatch",
    "WriteKind",
    "BatchCommitter",
    "CommitResult",
    "DbConfig",
    "DispatchConfig",
    "DispatchState",
    "TriggerDispatcher",
    "ErrorHandler",
    "ErrorRecord",
    "Errors",
    "HandlerCatalog",
    "TriggerHandler",
    "HandlerInvoker",
    "EntityRecord",
    "EntityType",
    "HandlerDescriptor",
    "HandlerRegistry",
    "InMemoryHandlerRegistry",
    "SqlHandlerRegistry",
]
