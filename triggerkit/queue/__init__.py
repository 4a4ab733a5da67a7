from __future__ import annotations

from ..config import QueueConfig
from .consumer import QueueConsumer
from .deferred import DeferredScheduler, DeferredWorker
from .models import QueueMessage
from .redis_streams import RedisStreamsQueue

__all__ = [
    "QueueConfig",
    "QueueConsumer",
    "QueueMessage",
    "RedisStreamsQueue",
    "DeferredScheduler",
    "DeferredWorker",
]
