"""
StatsCollector -- read-only operational figures for dashboards.

Derives cache and rate limiter reports on demand.  Never mutates the
cache store or any limiter; limiter data is read from window snapshots.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from callshield.cache.store import CacheStore
from callshield.ratelimit.identity import mask_client_id
from callshield.ratelimit.limiter import RateLimiter

logger = logging.getLogger(__name__)


class CacheReport(BaseModel):
    """Cache figures exposed to operational tooling."""

    total_entries: int = 0
    hit_rate_pct: float = 0.0
    total_bytes: int = 0
    total_mb: float = 0.0
    oldest_entry_age_seconds: float = 0.0
    newest_entry_age_seconds: float = 0.0
    evictions: int = 0


class ClientActivity(BaseModel):
    client_id: str
    count: int
    window_start: datetime


class LimiterReport(BaseModel):
    """Per-limiter activity summary with masked client identifiers."""

    name: str
    window_seconds: float
    max_requests: int
    total_clients: int = 0
    active_clients: int = 0
    admitted: int = 0
    denied: int = 0
    top_clients: List[ClientActivity] = Field(default_factory=list)


class StatsCollector:
    """Aggregate cache and limiter statistics.

    Args:
        cache_store: The store to report on.
        limiters: ``(name, limiter)`` pairs, e.g. ``registry.items()``.
    """

    def __init__(
        self,
        cache_store: CacheStore,
        limiters: Optional[Iterable[Tuple[str, RateLimiter]]] = None,
    ) -> None:
        self._cache = cache_store
        self._limiters: Dict[str, RateLimiter] = dict(limiters or [])

    def cache_report(self) -> CacheReport:
        stats = self._cache.stats()
        return CacheReport(
            total_entries=stats.count,
            hit_rate_pct=round(stats.hit_rate * 100, 2),
            total_bytes=stats.total_bytes,
            total_mb=round(stats.total_bytes / 1024 / 1024, 2),
            oldest_entry_age_seconds=round(stats.oldest_entry_age_seconds, 3),
            newest_entry_age_seconds=round(stats.newest_entry_age_seconds, 3),
            evictions=stats.evictions,
        )

    def limiter_report(self, name: str, top_n: int = 10) -> LimiterReport:
        """Report the ``top_n`` most active clients of one limiter.

        Only clients inside an unexpired window count as active.

        Raises:
            KeyError: If no limiter is registered under ``name``.
        """
        limiter = self._limiters[name]
        now = limiter.now()
        windows = limiter.snapshot()
        counters = limiter.counters()

        active = sorted(
            (w for w in windows if not w.is_expired(now)),
            key=lambda w: w.count,
            reverse=True,
        )
        top = [
            ClientActivity(
                client_id=mask_client_id(w.client_id),
                count=w.count,
                window_start=datetime.fromtimestamp(w.window_start, tz=timezone.utc),
            )
            for w in active[:top_n]
        ]
        return LimiterReport(
            name=name,
            window_seconds=limiter.config.window_seconds,
            max_requests=limiter.config.max_requests,
            total_clients=len(windows),
            active_clients=len(active),
            admitted=counters["admitted"],
            denied=counters["denied"],
            top_clients=top,
        )

    def snapshot(self, top_n: int = 10) -> Dict[str, Any]:
        """Everything at once, JSON-ready."""
        logger.debug("Stats snapshot requested", extra={"top_n": top_n})
        return {
            "cache": self.cache_report().model_dump(),
            "rate_limits": {
                name: self.limiter_report(name, top_n).model_dump(mode="json")
                for name in self._limiters
            },
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }
