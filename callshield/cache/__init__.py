"""Response cache: key derivation, storage, eviction and persistence."""

from callshield.cache.entry import CacheEntry, CacheStats, PersistedRecord
from callshield.cache.keys import SpeechParams, TextGenParams, derive_key, normalize
from callshield.cache.persistence import (
    FilePersistence,
    MemoryPersistence,
    PersistenceBackend,
    RedisPersistence,
)
from callshield.cache.store import CacheStore

__all__ = [
    "CacheEntry",
    "CacheStats",
    "CacheStore",
    "FilePersistence",
    "MemoryPersistence",
    "PersistedRecord",
    "PersistenceBackend",
    "RedisPersistence",
    "SpeechParams",
    "TextGenParams",
    "derive_key",
    "normalize",
]
