from .base import QueueStore
from .redis_store import RedisQueueStore
from .sql import SqlQueueStore

__all__ = [
    "QueueStore",
    "RedisQueueStore",
    "SqlQueueStore",
]
