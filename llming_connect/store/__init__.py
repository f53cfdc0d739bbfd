from .connection_store import ConnectionRecord, ConnectionStore
from .memory_store import MemoryConnectionStore


def __getattr__(name):
    """Lazy imports for optional dependencies."""
    if name == "MongoDBConnectionStore":
        from .mongodb_store import MongoDBConnectionStore
        return MongoDBConnectionStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    'ConnectionRecord',
    'ConnectionStore',
    'MemoryConnectionStore',
    'MongoDBConnectionStore',
]
