from .cache import QueryCache
from .config import QueueConfig, RemoteConfig, StoreConfig
from .connectivity import Connectivity
from .errors import (
    DirectWriteError,
    MutationValidationError,
    PendwriteError,
    PermanentRemoteError,
    RemoteError,
    StoreError,
    TransientRemoteError,
)
from .facade import MutationQueue, TableMutations
from .models import (
    MutationStatus,
    MutationType,
    OptimisticResult,
    ProcessSummary,
    QueuedMutation,
    QueueStats,
    RetentionPolicy,
)
from .processor import QueueProcessor

__all__ = [
    "Connectivity",
    "DirectWriteError",
    "MutationQueue",
    "MutationStatus",
    "MutationType",
    "MutationValidationError",
    "OptimisticResult",
    "PendwriteError",
    "PermanentRemoteError",
    "ProcessSummary",
    "QueryCache",
    "QueueConfig",
    "QueueProcessor",
    "QueueStats",
    "QueuedMutation",
    "RemoteConfig",
    "RemoteError",
    "RetentionPolicy",
    "StoreConfig",
    "StoreError",
    "TableMutations",
    "TransientRemoteError",
]
