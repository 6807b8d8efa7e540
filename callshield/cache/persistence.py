"""
Durable persistence backends for the cache store.

The store talks to a :class:`PersistenceBackend`; the concrete backend
(local files, Redis, or plain memory) can vary without touching store
logic.  Backends may raise on I/O failure -- the store is responsible
for catching, logging and degrading to memory-only behaviour.

Binary payloads are written as separate blobs referenced from the
metadata record by ``blob_ref`` so records stay small.
"""

import base64
import hashlib
import json
import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

import redis

from callshield.cache.entry import PersistedRecord

logger = logging.getLogger(__name__)

_B64_MARKER = "__b64__"
_DICT_MARKER = "__dict__"
_MARKERS = (_B64_MARKER, _DICT_MARKER)
_SAFE_KEY = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


# ---------------------------------------------------------------------------
# Value encoding
# ---------------------------------------------------------------------------


def _to_jsonable(value: Any) -> Any:
    """Recursively convert *value* to JSON-safe data; ``bytes`` become base64."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return {_B64_MARKER: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise TypeError(f"Non-string dict key: {k!r}")
            out[k] = _to_jsonable(v)
        # A user dict shaped like a marker is wrapped so it decodes as a dict.
        if len(out) == 1 and next(iter(out)) in _MARKERS:
            return {_DICT_MARKER: out}
        return out
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    raise TypeError(f"Unsupported value type: {type(value).__name__}")


def _from_jsonable(data: Any) -> Any:
    if isinstance(data, dict):
        if set(data) == {_B64_MARKER}:
            return base64.b64decode(data[_B64_MARKER])
        if set(data) == {_DICT_MARKER} and isinstance(data[_DICT_MARKER], dict):
            return {k: _from_jsonable(v) for k, v in data[_DICT_MARKER].items()}
        return {k: _from_jsonable(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_from_jsonable(v) for v in data]
    return data


def encode_value(value: Any) -> Tuple[Any, Optional[bytes], Optional[str]]:
    """Split a cache value into JSON metadata and an optional blob.

    * ``bytes`` values become a blob in full.
    * Dicts with top-level ``bytes`` fields move the largest one into the
      blob; any others are base64-inlined.
    * Everything else is encoded inline.

    Decoding is lossy for container types: tuples come back as lists and
    ``bytearray`` comes back as ``bytes``.

    Returns:
        ``(metadata, blob, blob_field)``.

    Raises:
        TypeError: If the value contains types that cannot be persisted.
    """
    if isinstance(value, (bytes, bytearray)):
        return None, bytes(value), None

    if isinstance(value, dict):
        binary_fields = [
            k for k, v in value.items() if isinstance(v, (bytes, bytearray))
        ]
        if binary_fields:
            blob_field = max(binary_fields, key=lambda k: len(value[k]))
            rest = {k: v for k, v in value.items() if k != blob_field}
            return _to_jsonable(rest), bytes(value[blob_field]), blob_field

    return _to_jsonable(value), None, None


def decode_value(
    metadata: Any, blob: Optional[bytes], blob_field: Optional[str]
) -> Any:
    """Inverse of :func:`encode_value`."""
    if blob is not None and blob_field is None:
        return blob
    value = _from_jsonable(metadata)
    if blob is not None and isinstance(value, dict):
        value[blob_field] = blob
    return value


def approximate_size(metadata: Any, blob: Optional[bytes]) -> int:
    """Byte length of the encoded metadata plus any blob."""
    size = len(json.dumps(metadata, separators=(",", ":")).encode("utf-8"))
    if blob is not None:
        size += len(blob)
    return size


# ---------------------------------------------------------------------------
# Backend interface
# ---------------------------------------------------------------------------


class PersistenceBackend(ABC):
    """Key-value persistence for cache records."""

    @abstractmethod
    def load(self, key: str) -> Optional[PersistedRecord]:
        """Return the record for *key*, or ``None`` if absent."""

    @abstractmethod
    def save(
        self, key: str, record: PersistedRecord, blob: Optional[bytes] = None
    ) -> None:
        """Write (or overwrite) the record and its blob, if any."""

    @abstractmethod
    def load_blob(self, record: PersistedRecord) -> Optional[bytes]:
        """Return the blob referenced by *record*, or ``None`` if missing."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the record and blob for *key*.  Missing keys are ignored."""

    @abstractmethod
    def list_all(self) -> Iterator[PersistedRecord]:
        """Yield every readable record."""

    @abstractmethod
    def clear(self) -> int:
        """Remove all records and blobs.  Returns the record count removed."""

    def close(self) -> None:
        """Release backend resources."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryPersistence(PersistenceBackend):
    """Dict-backed persistence.  Survives store restarts within a process."""

    def __init__(self) -> None:
        self._records: Dict[str, PersistedRecord] = {}
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def load(self, key: str) -> Optional[PersistedRecord]:
        with self._lock:
            return self._records.get(key)

    def save(
        self, key: str, record: PersistedRecord, blob: Optional[bytes] = None
    ) -> None:
        with self._lock:
            if blob is not None:
                record = record.model_copy(update={"blob_ref": key})
                self._blobs[key] = blob
            else:
                self._blobs.pop(key, None)
            self._records[key] = record

    def load_blob(self, record: PersistedRecord) -> Optional[bytes]:
        if record.blob_ref is None:
            return None
        with self._lock:
            return self._blobs.get(record.blob_ref)

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)
            self._blobs.pop(key, None)

    def list_all(self) -> Iterator[PersistedRecord]:
        with self._lock:
            records = list(self._records.values())
        return iter(records)

    def clear(self) -> int:
        with self._lock:
            count = len(self._records)
            self._records.clear()
            self._blobs.clear()
        return count


# ---------------------------------------------------------------------------
# Local file backend
# ---------------------------------------------------------------------------


class FilePersistence(PersistenceBackend):
    """One ``<name>.json`` record and optional ``<name>.bin`` blob per key.

    Keys that are not filesystem-safe are hashed to derive the file name;
    the record itself always carries the real key.

    Args:
        directory: Storage directory (created if missing).
    """

    RECORD_SUFFIX = ".json"
    BLOB_SUFFIX = ".bin"

    def __init__(self, directory: os.PathLike) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def _stem(self, key: str) -> str:
        if _SAFE_KEY.match(key):
            return key
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def _record_path(self, key: str) -> Path:
        return self._dir / (self._stem(key) + self.RECORD_SUFFIX)

    def _blob_path(self, key: str) -> Path:
        return self._dir / (self._stem(key) + self.BLOB_SUFFIX)

    def _atomic_write(self, path: Path, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=self._dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _read_record(self, path: Path) -> PersistedRecord:
        with open(path, "r", encoding="utf-8") as fh:
            return PersistedRecord.model_validate(json.load(fh))

    def load(self, key: str) -> Optional[PersistedRecord]:
        path = self._record_path(key)
        if not path.exists():
            return None
        return self._read_record(path)

    def save(
        self, key: str, record: PersistedRecord, blob: Optional[bytes] = None
    ) -> None:
        blob_path = self._blob_path(key)
        if blob is not None:
            self._atomic_write(blob_path, blob)
            record = record.model_copy(update={"blob_ref": blob_path.name})
        elif blob_path.exists():
            blob_path.unlink()
        self._atomic_write(
            self._record_path(key),
            record.model_dump_json().encode("utf-8"),
        )

    def load_blob(self, record: PersistedRecord) -> Optional[bytes]:
        if record.blob_ref is None:
            return None
        path = self._dir / Path(record.blob_ref).name
        if not path.exists():
            return None
        return path.read_bytes()

    def delete(self, key: str) -> None:
        for path in (self._record_path(key), self._blob_path(key)):
            if path.exists():
                path.unlink()

    def list_all(self) -> Iterator[PersistedRecord]:
        for path in sorted(self._dir.glob("*" + self.RECORD_SUFFIX)):
            try:
                yield self._read_record(path)
            except (OSError, ValueError) as exc:
                logger.warning(
                    "Skipping unreadable cache record",
                    extra={"file": path.name, "error": str(exc)},
                )

    def clear(self) -> int:
        count = 0
        for path in list(self._dir.iterdir()):
            if path.suffix == self.RECORD_SUFFIX:
                count += 1
            elif path.suffix not in (self.BLOB_SUFFIX, ".tmp"):
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        return count


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisPersistence(PersistenceBackend):
    """Redis-backed persistence.

    Keys: ``{prefix}:rec:{key}`` holds the JSON record, ``{prefix}:blob:{key}``
    the raw blob.  Both carry a Redis TTL equal to the entry TTL.  Redis is
    used purely as durable storage; each process keeps its own in-memory
    cache.

    Args:
        redis_url: Redis connection URL (e.g. redis://localhost:6379/0).
        key_prefix: Prefix for all keys.
        _redis_client: Pre-built client (testing).
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "callshield:cache",
        _redis_client: Optional[Any] = None,
    ) -> None:
        self._owns_client = _redis_client is None
        if _redis_client is not None:
            self._client = _redis_client
        else:
            self._client = redis.from_url(redis_url)
        self._prefix = key_prefix.rstrip(":")

    def _rec_key(self, key: str) -> str:
        return f"{self._prefix}:rec:{key}"

    def _blob_key(self, key: str) -> str:
        return f"{self._prefix}:blob:{key}"

    @staticmethod
    def _parse(data: Any) -> PersistedRecord:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return PersistedRecord.model_validate_json(data)

    def load(self, key: str) -> Optional[PersistedRecord]:
        data = self._client.get(self._rec_key(key))
        if data is None:
            return None
        return self._parse(data)

    def save(
        self, key: str, record: PersistedRecord, blob: Optional[bytes] = None
    ) -> None:
        ttl = max(1, int(record.ttl_seconds))
        pipe = self._client.pipeline()
        if blob is not None:
            record = record.model_copy(update={"blob_ref": self._blob_key(key)})
            pipe.set(self._blob_key(key), blob, ex=ttl)
        else:
            pipe.delete(self._blob_key(key))
        pipe.set(self._rec_key(key), record.model_dump_json(), ex=ttl)
        pipe.execute()

    def load_blob(self, record: PersistedRecord) -> Optional[bytes]:
        if record.blob_ref is None:
            return None
        data = self._client.get(record.blob_ref)
        if isinstance(data, str):
            data = data.encode("latin-1")
        return data

    def delete(self, key: str) -> None:
        self._client.delete(self._rec_key(key), self._blob_key(key))

    def list_all(self) -> Iterator[PersistedRecord]:
        for rkey in self._client.scan_iter(match=f"{self._prefix}:rec:*"):
            data = self._client.get(rkey)
            if data is None:
                continue
            try:
                yield self._parse(data)
            except ValueError as exc:
                logger.warning(
                    "Skipping unreadable cache record",
                    extra={"redis_key": str(rkey), "error": str(exc)},
                )

    def clear(self) -> int:
        records = list(self._client.scan_iter(match=f"{self._prefix}:rec:*"))
        blobs = list(self._client.scan_iter(match=f"{self._prefix}:blob:*"))
        if records or blobs:
            self._client.delete(*(records + blobs))
        return len(records)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_persistence(cache_settings: Any) -> Optional[PersistenceBackend]:
    """Create the configured backend, falling back to memory-only.

    Args:
        cache_settings: A :class:`callshield.config.CacheSettings`.

    Returns:
        A backend instance, or ``None`` for ``backend: memory``.
    """
    backend = (cache_settings.backend or "file").lower()
    if backend == "memory":
        return None
    try:
        if backend == "redis":
            client = RedisPersistence(
                redis_url=cache_settings.redis_url,
                key_prefix=cache_settings.redis_key_prefix,
            )
            client._client.ping()
            logger.info("Cache persistence using Redis", extra={"redis_url": "***"})
            return client
        if backend == "file":
            store = FilePersistence(cache_settings.storage_dir)
            logger.info(
                "Cache persistence using local files",
                extra={"directory": str(store.directory)},
            )
            return store
    except Exception as exc:
        logger.warning(
            "Cache persistence init failed, running memory-only",
            extra={"backend": backend, "error": str(exc)},
        )
        return None
    logger.warning("Unknown cache backend '%s', running memory-only", backend)
    return None
