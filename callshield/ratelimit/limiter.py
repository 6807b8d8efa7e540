"""
Fixed-window, per-client admission control.

Each :class:`RateLimiter` owns one map of client windows guarded by a
lock.  A window opens on a client's first request and admits up to
``max_requests`` calls until ``window_end``; the first call at or after
that boundary resets it atomically.  A background sweep drops windows
that have been idle for a full extra window, bounding memory under
client churn.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterator, List, Tuple

from pydantic import BaseModel, ConfigDict, Field

from callshield.exceptions import ConfigurationError, RateLimitedError
from callshield.ratelimit.identity import UNKNOWN_CLIENT
from callshield.scheduling import PeriodicTask

logger = logging.getLogger(__name__)


class RateLimitConfig(BaseModel):
    """Immutable limiter configuration.

    Attributes:
        window_ms: Window length in milliseconds.
        max_requests: Requests admitted per client per window.
        message: Human-readable denial message.
        warn_threshold: Log a near-exhaustion notice once ``remaining`` drops to this.
    """

    model_config = ConfigDict(frozen=True)

    window_ms: int = Field(..., gt=0)
    max_requests: int = Field(..., ge=1)
    message: str = "Too many requests, please try again later"
    warn_threshold: int = Field(default=5, ge=0)

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000.0


@dataclass
class ClientWindow:
    """Admission state for one client.  Times are epoch seconds."""

    client_id: str
    count: int
    window_start: float
    window_end: float

    def is_expired(self, now: float) -> bool:
        return now >= self.window_end


class AdmitResult(BaseModel):
    """Outcome of one admission check.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: ``max(0, limit - count)``, reported even on denial.
        reset_at: Epoch seconds when the current window ends.
        limit: Configured ``max_requests``.
        window_seconds: Configured window length.
        checked_at: Epoch seconds when the decision was made.
    """

    model_config = ConfigDict(frozen=True)

    allowed: bool
    remaining: int
    reset_at: float
    limit: int
    window_seconds: float
    checked_at: float

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds until the window resets (at least 1 when denied)."""
        delay = max(0, math.ceil(self.reset_at - self.checked_at))
        return max(1, delay) if not self.allowed else delay

    def headers(self) -> Dict[str, str]:
        """Response headers describing this decision."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
            "X-RateLimit-Window": f"{self.window_seconds:g}",
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class RateLimiter:
    """Thread-safe per-client fixed-window limiter.

    Args:
        config: Window size, request budget and denial message.
        name: Operation class name, used in logs and reports.
        clock: Source of epoch seconds (injectable for tests).
        start_sweeper: Start the idle-window sweep on construction.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        name: str = "default",
        clock: Callable[[], float] = time.time,
        start_sweeper: bool = True,
    ) -> None:
        self._config = config
        self._name = name
        self._clock = clock
        self._clients: Dict[str, ClientWindow] = {}
        self._lock = threading.Lock()
        self._admitted: int = 0
        self._denied: int = 0

        self._sweeper = PeriodicTask(
            self.sweep,
            config.window_seconds,
            name=f"callshield-ratelimit-sweep-{name}",
        )
        if start_sweeper:
            self._sweeper.start()

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @property
    def name(self) -> str:
        return self._name

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def admit(self, client_id: str) -> AdmitResult:
        """Count a request against ``client_id`` and decide admission.

        Never raises for a string client id; an empty id is treated as
        ``"unknown"``.
        """
        client_id = client_id or UNKNOWN_CLIENT
        max_requests = self._config.max_requests

        with self._lock:
            now = self._clock()
            window = self._clients.get(client_id)
            if window is None or window.is_expired(now):
                window = ClientWindow(
                    client_id=client_id,
                    count=1,
                    window_start=now,
                    window_end=now + self._config.window_seconds,
                )
                self._clients[client_id] = window
            else:
                window.count += 1
            count = window.count
            reset_at = window.window_end

            allowed = count <= max_requests
            if allowed:
                self._admitted += 1
            else:
                self._denied += 1

        result = AdmitResult(
            allowed=allowed,
            remaining=max(0, max_requests - count),
            reset_at=reset_at,
            limit=max_requests,
            window_seconds=self._config.window_seconds,
            checked_at=now,
        )

        if not allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={
                    "limiter": self._name,
                    "client_id": client_id,
                    "retry_after": result.retry_after_seconds,
                },
            )
        elif result.remaining <= self._config.warn_threshold:
            logger.warning(
                "Rate limit nearly exhausted",
                extra={
                    "limiter": self._name,
                    "client_id": client_id,
                    "remaining": result.remaining,
                },
            )
        return result

    def enforce(self, client_id: str) -> AdmitResult:
        """Like :meth:`admit`, but raise on denial.

        Raises:
            RateLimitedError: Carrying the retry delay and the result.
        """
        result = self.admit(client_id)
        if not result.allowed:
            raise RateLimitedError(
                self._config.message,
                retry_after_seconds=result.retry_after_seconds,
                admit_result=result,
            )
        return result

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Drop windows idle for a full window past their end.

        Returns:
            Number of client windows removed.
        """
        grace = self._config.window_seconds
        with self._lock:
            now = self._clock()
            stale = [
                cid for cid, w in self._clients.items()
                if now >= w.window_end + grace
            ]
            for cid in stale:
                del self._clients[cid]

        if stale:
            logger.info(
                "Idle rate limit windows cleaned up",
                extra={"limiter": self._name, "count": len(stale)},
            )
        return len(stale)

    def snapshot(self) -> List[ClientWindow]:
        """Copies of all current client windows (read-only view)."""
        with self._lock:
            return [replace(w) for w in self._clients.values()]

    def counters(self) -> Dict[str, int]:
        """Admission counters since construction."""
        with self._lock:
            return {
                "admitted": self._admitted,
                "denied": self._denied,
                "tracked_clients": len(self._clients),
            }

    def now(self) -> float:
        return self._clock()

    def close(self) -> None:
        """Stop the sweep and drop all windows.  Idempotent."""
        self._sweeper.stop()
        with self._lock:
            self._clients.clear()


class RateLimiterRegistry:
    """One :class:`RateLimiter` per protected operation class.

    Args:
        limiters: Mapping of class name to limiter.
    """

    def __init__(self, limiters: Dict[str, RateLimiter]) -> None:
        self._limiters = dict(limiters)

    @classmethod
    def from_configs(
        cls,
        configs: Dict[str, Dict[str, Any]],
        clock: Callable[[], float] = time.time,
        start_sweepers: bool = True,
    ) -> "RateLimiterRegistry":
        """Build limiters from raw ``{name: {window_ms, max_requests, message}}``.

        Raises:
            ConfigurationError: If any entry fails validation.
        """
        limiters: Dict[str, RateLimiter] = {}
        try:
            for name, raw in configs.items():
                config = RateLimitConfig.model_validate(raw)
                limiters[name] = RateLimiter(
                    config, name=name, clock=clock, start_sweeper=start_sweepers
                )
        except ValueError as exc:
            for limiter in limiters.values():
                limiter.close()
            raise ConfigurationError(f"Invalid rate limit config '{name}': {exc}") from exc
        logger.info("Rate limiters configured", extra={"classes": sorted(limiters)})
        return cls(limiters)

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        clock: Callable[[], float] = time.time,
        start_sweepers: bool = True,
    ) -> "RateLimiterRegistry":
        return cls.from_configs(settings.rate_limits, clock=clock, start_sweepers=start_sweepers)

    def get(self, name: str) -> RateLimiter:
        """Return the limiter for an operation class.

        Raises:
            ConfigurationError: If no limiter is configured under ``name``.
        """
        try:
            return self._limiters[name]
        except KeyError:
            raise ConfigurationError(f"No rate limiter configured for '{name}'") from None

    def __contains__(self, name: str) -> bool:
        return name in self._limiters

    def __iter__(self) -> Iterator[str]:
        return iter(self._limiters)

    def items(self) -> List[Tuple[str, RateLimiter]]:
        return list(self._limiters.items())

    def close(self) -> None:
        for limiter in self._limiters.values():
            limiter.close()
