"""
In-memory response cache with TTL expiry, LRU eviction and durable
persistence.

Holds upstream results keyed by a derived cache key.  Expiry is checked
lazily on every read and proactively by a background sweep.  The number
of live entries is bounded by ``max_entries``; inserting a new key at
capacity evicts the least-recently-accessed entry first.

Every mutation updates memory and queues its durable write on a
single-worker executor while holding the store lock, so durable storage
sees operations in memory order and persistence is never on the
caller's critical path.  Persistence faults are logged and
swallowed: the affected entry simply lives in memory only.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple

from callshield.cache.entry import CacheEntry, CacheStats, PersistedRecord
from callshield.cache.persistence import (
    PersistenceBackend,
    approximate_size,
    build_persistence,
    decode_value,
    encode_value,
)
from callshield.exceptions import CacheUnavailableError
from callshield.scheduling import PeriodicTask

logger = logging.getLogger(__name__)

_KEY_PREFIX_LEN = 8


def _prefix(key: str) -> str:
    return key[:_KEY_PREFIX_LEN]


class CacheStore:
    """Thread-safe TTL + LRU cache with a persistence side channel.

    Args:
        max_entries: Upper bound on live entries (>= 1).
        default_ttl_seconds: TTL used when :meth:`set` is given none.
        persistence: Durable backend; ``None`` runs memory-only.
        sweep_interval_seconds: Period of the background expiry sweep.
        clock: Source of epoch seconds (injectable for tests).
        start_sweeper: Start the background sweep on construction.
    """

    def __init__(
        self,
        max_entries: int = 100,
        default_ttl_seconds: int = 3600,
        persistence: Optional[PersistenceBackend] = None,
        sweep_interval_seconds: float = 600,
        clock: Callable[[], float] = time.time,
        start_sweeper: bool = True,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")

        self._max_entries = max_entries
        self._default_ttl = default_ttl_seconds
        self._persistence = persistence
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._hits: int = 0
        self._misses: int = 0
        self._evictions: int = 0
        self._closed = False

        self._executor: Optional[ThreadPoolExecutor] = None
        if persistence is not None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="callshield-cache-persist"
            )
            self._load_persisted()

        self._sweeper = PeriodicTask(
            self.sweep_expired,
            sweep_interval_seconds,
            name="callshield-cache-sweep",
        )
        if start_sweeper:
            self._sweeper.start()

        logger.info(
            "CacheStore initialised",
            extra={
                "max_entries": max_entries,
                "default_ttl_seconds": default_ttl_seconds,
                "persistent": persistence is not None,
                "loaded": len(self._entries),
            },
        )

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        clock: Callable[[], float] = time.time,
        start_sweeper: bool = True,
    ) -> "CacheStore":
        """Build a store from a :class:`callshield.config.Settings`."""
        cache = settings.cache
        return cls(
            max_entries=cache.max_entries,
            default_ttl_seconds=cache.default_ttl_seconds,
            persistence=build_persistence(cache),
            sweep_interval_seconds=cache.sweep_interval_seconds,
            clock=clock,
            start_sweeper=start_sweeper,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> Tuple[Any, bool]:
        """Look up a cached value.

        An expired entry is removed (from memory and durable storage) and
        reported as a miss.  On a hit ``access_count`` and
        ``last_accessed_at`` are updated.

        Args:
            key: Derived cache key.

        Returns:
            ``(value, True)`` on a hit, ``(None, False)`` otherwise.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None, False

            now = self._clock()
            if not entry.is_expired(now):
                entry.access_count += 1
                entry.last_accessed_at = now
                self._hits += 1
                logger.debug(
                    "Cache hit",
                    extra={"key_prefix": _prefix(key), "access_count": entry.access_count},
                )
                return entry.value, True

            del self._entries[key]
            self._misses += 1
            self._submit("delete", key, self._persistence_delete, key)

        logger.debug("Cache entry expired", extra={"key_prefix": _prefix(key)})
        return None, False

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Insert or overwrite an entry.

        At capacity, inserting a new key first evicts the entry with the
        oldest ``last_accessed_at`` (ties: oldest ``created_at``).  The
        durable write happens asynchronously; its failure is logged only.

        Args:
            key: Derived cache key.
            value: Payload to cache.
            ttl_seconds: Lifetime; defaults to ``default_ttl_seconds``.

        Raises:
            ValueError: If ``ttl_seconds`` is not positive.
        """
        ttl = self._default_ttl if ttl_seconds is None else int(ttl_seconds)
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")

        persistable = True
        try:
            metadata, blob, blob_field = encode_value(value)
            size = approximate_size(metadata, blob)
        except (TypeError, ValueError) as exc:
            persistable = False
            metadata, blob, blob_field = None, None, None
            size = len(repr(value).encode("utf-8"))
            self._log_unavailable("encode", key, exc)

        with self._lock:
            now = self._clock()
            evicted: Optional[str] = None
            if key not in self._entries and len(self._entries) >= self._max_entries:
                evicted = self._evict_lru_locked()

            entry = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                ttl_seconds=ttl,
                access_count=0,
                last_accessed_at=now,
                size_bytes=size,
            )
            self._entries[key] = entry

            # Queue durable ops before releasing the lock so the worker
            # applies them in the same order as the memory updates.
            if evicted is not None:
                self._submit("evict", evicted, self._persistence_delete, evicted)
            if persistable:
                record = PersistedRecord(
                    key=key,
                    created_at=now,
                    ttl_seconds=ttl,
                    access_count=0,
                    last_accessed_at=now,
                    value_metadata=metadata,
                    blob_field=blob_field,
                )
                self._submit("save", key, self._persistence_save, key, record, blob)
            else:
                # Drop any older durable copy so a restart cannot resurrect it.
                self._submit("delete", key, self._persistence_delete, key)

        logger.debug("Cache set", extra={"key_prefix": _prefix(key), "ttl_seconds": ttl})

    def delete(self, key: str) -> bool:
        """Remove one entry from memory and durable storage.

        Returns:
            ``True`` if the entry was present in memory.
        """
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            self._submit("delete", key, self._persistence_delete, key)
        if removed:
            logger.info("Cache entry deleted", extra={"key_prefix": _prefix(key)})
        return removed

    def clear(self) -> int:
        """Remove all entries from memory and durable storage.

        Returns:
            Number of in-memory entries removed.
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._submit("clear", "*", self._persistence_clear)
        logger.info("Cache cleared", extra={"entries_removed": count})
        return count

    def sweep_expired(self) -> int:
        """Remove all expired entries from memory and durable storage.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._entries.items() if entry.is_expired(now)
            ]
            for key in expired_keys:
                del self._entries[key]
                self._submit("sweep", key, self._persistence_delete, key)

        if expired_keys:
            logger.info(
                "Expired entries cleaned up",
                extra={"count": len(expired_keys)},
            )
        return len(expired_keys)

    def stats(self) -> CacheStats:
        """Return aggregate cache statistics."""
        with self._lock:
            now = self._clock()
            entries = list(self._entries.values())
            hits, misses, evictions = self._hits, self._misses, self._evictions

        total = hits + misses
        oldest = newest = 0.0
        if entries:
            created = [e.created_at for e in entries]
            oldest = max(0.0, now - min(created))
            newest = max(0.0, now - max(created))
        return CacheStats(
            count=len(entries),
            hits=hits,
            misses=misses,
            hit_rate=hits / total if total > 0 else 0.0,
            total_bytes=sum(e.size_bytes for e in entries),
            oldest_entry_age_seconds=oldest,
            newest_entry_age_seconds=newest,
            evictions=evictions,
        )

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until all queued durable writes have run."""
        if self._executor is None or self._closed:
            return
        try:
            self._executor.submit(lambda: None).result(timeout=timeout)
        except RuntimeError:
            pass

    def close(self) -> None:
        """Stop the sweep, drain pending writes and close the backend.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._sweeper.stop()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        if self._persistence is not None:
            try:
                self._persistence.close()
            except Exception as exc:
                self._log_unavailable("close", "*", exc)
        logger.info("CacheStore closed")

    def __enter__(self) -> "CacheStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def size(self) -> int:
        """Current number of entries in the cache."""
        with self._lock:
            return len(self._entries)

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def default_ttl_seconds(self) -> int:
        return self._default_ttl

    @property
    def persistent(self) -> bool:
        """Whether a durable backend is attached."""
        return self._persistence is not None

    @property
    def hit_rate(self) -> float:
        """Current hit rate as a float between 0.0 and 1.0."""
        with self._lock:
            total = self._hits + self._misses
            return self._hits / total if total > 0 else 0.0

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def _evict_lru_locked(self) -> Optional[str]:
        """Drop the least-recently-accessed entry.  Caller holds the lock."""
        if not self._entries:
            return None
        victim = min(
            self._entries.values(),
            key=lambda e: (e.last_accessed_at, e.created_at),
        )
        del self._entries[victim.key]
        self._evictions += 1
        logger.info(
            "LRU eviction",
            extra={"key_prefix": _prefix(victim.key), "access_count": victim.access_count},
        )
        return victim.key

    # ------------------------------------------------------------------
    # Persistence side channel
    # ------------------------------------------------------------------

    def _load_persisted(self) -> None:
        """Load unexpired records from durable storage into memory."""
        assert self._persistence is not None
        now = self._clock()
        try:
            records = list(self._persistence.list_all())
        except Exception as exc:
            self._log_unavailable("load", "*", exc)
            return

        live: List[Tuple[PersistedRecord, Any, int]] = []
        discarded = 0
        for record in records:
            if record.is_expired(now):
                discarded += 1
                self._guarded("discard", record.key, self._persistence_delete, record.key)
                continue
            try:
                blob = self._persistence.load_blob(record) if record.blob_ref else None
                if record.blob_ref and blob is None:
                    raise CacheUnavailableError("blob missing")
                value = decode_value(record.value_metadata, blob, record.blob_field)
                size = approximate_size(record.value_metadata, blob)
            except Exception as exc:
                self._log_unavailable("load", record.key, exc)
                self._guarded("discard", record.key, self._persistence_delete, record.key)
                continue
            live.append((record, value, size))

        # Most recently used first, so over-capacity leftovers are the LRU ones.
        live.sort(key=lambda t: (t[0].last_accessed_at, t[0].created_at), reverse=True)
        for record, _, _ in live[self._max_entries:]:
            self._guarded("evict", record.key, self._persistence_delete, record.key)

        for record, value, size in live[: self._max_entries]:
            self._entries[record.key] = CacheEntry(
                key=record.key,
                value=value,
                created_at=record.created_at,
                ttl_seconds=record.ttl_seconds,
                access_count=record.access_count,
                last_accessed_at=record.last_accessed_at,
                size_bytes=size,
            )

        if self._entries or discarded:
            logger.info(
                "Persisted cache loaded",
                extra={"loaded": len(self._entries), "discarded_expired": discarded},
            )

    def _persistence_save(
        self, key: str, record: PersistedRecord, blob: Optional[bytes]
    ) -> None:
        assert self._persistence is not None
        self._persistence.save(key, record, blob)

    def _persistence_delete(self, key: str) -> None:
        assert self._persistence is not None
        self._persistence.delete(key)

    def _persistence_clear(self) -> None:
        assert self._persistence is not None
        self._persistence.clear()

    def _submit(self, operation: str, key: str, fn: Callable[..., None], *args: Any) -> None:
        """Queue a durable write; never raises."""
        if self._executor is None:
            return
        try:
            self._executor.submit(self._guarded, operation, key, fn, *args)
        except RuntimeError:
            logger.debug(
                "Persistence write skipped after close",
                extra={"operation": operation, "key_prefix": _prefix(key)},
            )

    def _guarded(self, operation: str, key: str, fn: Callable[..., None], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as exc:
            self._log_unavailable(operation, key, exc)

    @staticmethod
    def _log_unavailable(operation: str, key: str, exc: Exception) -> None:
        logger.warning(
            "Cache persistence unavailable; entry kept memory-only",
            extra={
                "operation": operation,
                "key_prefix": _prefix(key),
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
