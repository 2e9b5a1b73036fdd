from .base import RemoteClient
from .postgrest import PostgrestClient
from .sql import SqlRemoteClient

__all__ = [
    "PostgrestClient",
    "RemoteClient",
    "SqlRemoteClient",
]
