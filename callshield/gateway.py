"""
Call gateway: admission, cache lookup and upstream dispatch.

Control flow for a cacheable operation::

    admit(client) -> [denied: RateLimitedError]
                  -> derive_key(params) -> cache.get(key)
                  -> [hit: cached value]
                  -> [miss: upstream(params) -> cache.set(key, value) -> value]

Non-cacheable operations go through admission only.  Upstream failures
propagate unchanged and are never cached.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from callshield.cache.keys import NormalizedParams, derive_key, normalize
from callshield.cache.store import CacheStore
from callshield.ratelimit.limiter import AdmitResult, RateLimiterRegistry

logger = logging.getLogger(__name__)

# Operation name -> rate limiter class
OPERATION_LIMITERS = {
    "tts": "tts",
    "ark": "ark",
    "voice_clone": "voice_clone",
}


@dataclass
class GatewayResult:
    """Value returned through the gateway.

    Attributes:
        value: Upstream (or cached) payload.
        cached: Whether the value was served from cache.
        admit: The admission decision for the request.
        cache_key: Derived key, for cacheable operations.
        latency_ms: Wall time spent inside the gateway.
    """

    value: Any
    cached: bool
    admit: AdmitResult
    cache_key: Optional[str] = None
    latency_ms: float = 0.0


class CallGateway:
    """Shield metered upstreams behind the cache and the rate limiters.

    Args:
        cache_store: Shared response cache.
        limiters: Registry holding one limiter per operation class.
    """

    def __init__(self, cache_store: CacheStore, limiters: RateLimiterRegistry) -> None:
        self._cache = cache_store
        self._limiters = limiters

    def _limiter_name(self, operation: str) -> str:
        return OPERATION_LIMITERS.get(operation, operation)

    def call_cached(
        self,
        operation: str,
        client_id: str,
        params: Union[NormalizedParams, Mapping[str, Any]],
        upstream: Callable[[NormalizedParams], Any],
        ttl_seconds: Optional[int] = None,
    ) -> GatewayResult:
        """Serve a cacheable operation.

        Args:
            operation: Operation class (``"tts"`` or ``"ark"``).
            client_id: Resolved caller identity.
            params: Normalized parameters, or a raw body to normalize.
            upstream: Metered call, invoked only on a cache miss.
            ttl_seconds: Lifetime of the stored result.

        Raises:
            RateLimitedError: If admission is denied.
            InvalidParamsError: If raw params fail validation.
            Exception: Whatever ``upstream`` raises, unchanged.
        """
        start = time.time()
        admit = self._limiters.get(self._limiter_name(operation)).enforce(client_id)

        if isinstance(params, Mapping):
            params = normalize(operation, params)
        key = derive_key(params)

        value, found = self._cache.get(key)
        if found:
            logger.info(
                "Served from cache",
                extra={"operation": operation, "key_prefix": key[:8]},
            )
            return GatewayResult(
                value=value,
                cached=True,
                admit=admit,
                cache_key=key,
                latency_ms=(time.time() - start) * 1000,
            )

        value = upstream(params)
        self._cache.set(key, value, ttl_seconds)
        latency_ms = (time.time() - start) * 1000
        logger.info(
            "Upstream call completed",
            extra={
                "operation": operation,
                "key_prefix": key[:8],
                "latency_ms": round(latency_ms, 1),
            },
        )
        return GatewayResult(
            value=value,
            cached=False,
            admit=admit,
            cache_key=key,
            latency_ms=latency_ms,
        )

    def call_uncached(
        self,
        operation: str,
        client_id: str,
        upstream: Callable[[], Any],
    ) -> GatewayResult:
        """Serve a non-cacheable operation (rate limiting only).

        Raises:
            RateLimitedError: If admission is denied.
            Exception: Whatever ``upstream`` raises, unchanged.
        """
        start = time.time()
        admit = self._limiters.get(self._limiter_name(operation)).enforce(client_id)
        value = upstream()
        return GatewayResult(
            value=value,
            cached=False,
            admit=admit,
            latency_ms=(time.time() - start) * 1000,
        )
