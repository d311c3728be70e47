from .models import CacheCategory, CacheEntry, CacheStatistics
from .persistence import (
    CachePersistence,
    InMemoryPersistence,
    JsonDirectoryPersistence,
    SQLitePersistence,
)
from .store import CacheStore, build_persistence

__all__ = [
    "CacheCategory",
    "CacheEntry",
    "CacheStatistics",
    "CachePersistence",
    "InMemoryPersistence",
    "JsonDirectoryPersistence",
    "SQLitePersistence",
    "CacheStore",
    "build_persistence",
]
