"""
Cache data model: in-memory entries, persisted records and statistics.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class CacheEntry(BaseModel):
    """A single cached upstream result held in memory.

    Timestamps are epoch seconds from the store's clock.

    Attributes:
        key: Derived cache key.
        value: Opaque payload (may contain ``bytes``).
        created_at: Insertion time.
        ttl_seconds: Lifetime; expired when ``now >= created_at + ttl_seconds``.
        access_count: Number of successful reads.
        last_accessed_at: Time of the last read (insertion time if never read).
        size_bytes: Approximate footprint, computed once at insertion.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: str
    value: Any = None
    created_at: float
    ttl_seconds: int = Field(..., gt=0)
    access_count: int = 0
    last_accessed_at: float
    size_bytes: int = 0

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        """Whether the entry's lifetime has elapsed at ``now``."""
        return now >= self.expires_at


class PersistedRecord(BaseModel):
    """Durable metadata record for one cache key.

    Large binary payloads live in a separate blob referenced by
    ``blob_ref``; ``value_metadata`` holds the JSON-encodable remainder.

    Attributes:
        key: Cache key.
        created_at: Insertion time (epoch seconds).
        ttl_seconds: Lifetime in seconds.
        access_count: Reads served before the record was written.
        last_accessed_at: Last read time (epoch seconds).
        value_metadata: Encoded value without the blob payload.
        blob_ref: Backend-specific blob identifier, when a blob exists.
        blob_field: Dict field the blob belongs to, or ``None`` when the
            whole value is the blob.
    """

    key: str
    created_at: float
    ttl_seconds: int
    access_count: int = 0
    last_accessed_at: float
    value_metadata: Any = None
    blob_ref: Optional[str] = None
    blob_field: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.created_at + self.ttl_seconds


class CacheStats(BaseModel):
    """Aggregate cache statistics.

    Attributes:
        count: Live entries in memory.
        hits: Successful lookups since the store was loaded.
        misses: Failed lookups (absent or expired) since load.
        hit_rate: ``hits / (hits + misses)``; 0.0 with no lookups.
        total_bytes: Approximate size of all live entries.
        oldest_entry_age_seconds: Age of the oldest entry (0.0 when empty).
        newest_entry_age_seconds: Age of the newest entry (0.0 when empty).
        evictions: LRU evictions since load.
    """

    count: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    total_bytes: int = 0
    oldest_entry_age_seconds: float = 0.0
    newest_entry_age_seconds: float = 0.0
    evictions: int = 0
