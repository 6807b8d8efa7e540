"""Per-client admission control."""

from callshield.ratelimit.identity import mask_client_id, resolve_client_id
from callshield.ratelimit.limiter import (
    AdmitResult,
    ClientWindow,
    RateLimitConfig,
    RateLimiter,
    RateLimiterRegistry,
)

__all__ = [
    "AdmitResult",
    "ClientWindow",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimiterRegistry",
    "mask_client_id",
    "resolve_client_id",
]
