"""
Pydantic response models for the callshield HTTP adapter.

Request bodies are accepted as JSON objects and validated by
:func:`callshield.cache.keys.normalize` so the same rules apply to HTTP
and in-process callers.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ErrorResponse(BaseModel):
    """Error body returned for every handled failure.

    Attributes:
        success: Always ``False``.
        error: Machine-readable error type.
        message: Human-readable description.
        details: Validation messages, when applicable.
        retry_after: Seconds until retry is allowed (rate limiting only).
    """

    success: bool = False
    error: str
    message: str
    details: List[str] = Field(default_factory=list)
    retry_after: Optional[int] = None
    timestamp: datetime = Field(default_factory=_now)


class SynthesisData(BaseModel):
    audio_url: str
    audio_size: int
    encoding: str
    cached: bool


class SynthesisResponse(BaseModel):
    success: bool = True
    data: SynthesisData
    timestamp: datetime = Field(default_factory=_now)


class GenerationResponse(BaseModel):
    success: bool = True
    data: Any
    cached: bool
    timestamp: datetime = Field(default_factory=_now)


class PassThroughResponse(BaseModel):
    success: bool = True
    data: Any
    timestamp: datetime = Field(default_factory=_now)


class CacheStatsResponse(BaseModel):
    success: bool = True
    data: Dict[str, Any]
    timestamp: datetime = Field(default_factory=_now)


class CacheClearResponse(BaseModel):
    success: bool = True
    entries_removed: int
    timestamp: datetime = Field(default_factory=_now)


class HealthResponse(BaseModel):
    """Liveness summary.

    Attributes:
        status: ``"healthy"``.
        version: Application version string.
        uptime_seconds: Seconds since the app was created.
        components: Per-component status strings.
    """

    status: str
    version: str
    uptime_seconds: float
    components: Dict[str, str]
