"""
FastAPI application factory for the callshield gateway.

A thin calling layer over :class:`CallGateway`: it resolves the client
identity, applies the global and per-operation rate limiters, attaches
``X-RateLimit-*`` headers, maps errors to JSON responses and exposes
cache statistics.  Upstream vendors are injected as plain callables.
"""

import base64
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import Body, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from callshield.api.schemas import (
    CacheClearResponse,
    CacheStatsResponse,
    ErrorResponse,
    GenerationResponse,
    HealthResponse,
    PassThroughResponse,
    SynthesisData,
    SynthesisResponse,
)
from callshield.cache.keys import SpeechParams, TextGenParams
from callshield.cache.store import CacheStore
from callshield.config import Settings, get_settings
from callshield.exceptions import (
    CallShieldException,
    ConfigurationError,
    InvalidParamsError,
    RateLimitedError,
    UpstreamError,
    UpstreamNotConfiguredError,
)
from callshield.gateway import CallGateway, GatewayResult
from callshield.observability.stats import StatsCollector
from callshield.ratelimit.identity import resolve_client_id
from callshield.ratelimit.limiter import AdmitResult, RateLimiterRegistry

logger = logging.getLogger(__name__)

# Upstream collaborator signatures
SpeechUpstream = Callable[[SpeechParams], bytes]
TextUpstream = Callable[[TextGenParams], Any]
VoiceCloneUpstream = Callable[[Dict[str, Any]], Any]

_UNLIMITED_PATHS = ("/health", "/docs", "/openapi.json", "/redoc")


def _error_response(
    status_code: int,
    error: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    **extra: Any,
) -> JSONResponse:
    body = ErrorResponse(error=error, message=message, **extra)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers=headers,
    )


def _client_id(request: Request) -> str:
    client_id = getattr(request.state, "client_id", None)
    if client_id:
        return client_id
    peer = request.client.host if request.client else None
    return resolve_client_id(request.headers, peer)


def _apply_headers(response: Response, result: GatewayResult) -> None:
    _set_limit_headers(response, result.admit)


def _set_limit_headers(response: Response, admit: AdmitResult) -> None:
    for name, value in admit.headers().items():
        response.headers[name] = value


def _enforce_limit(request: Request, response: Response, limiter_name: str) -> None:
    """Charge the request to ``limiter_name``; raise RateLimitedError on denial."""
    registry: RateLimiterRegistry = request.app.state.limiters
    admit = registry.get(limiter_name).enforce(_client_id(request))
    _set_limit_headers(response, admit)


def create_app(
    settings: Optional[Settings] = None,
    speech_upstream: Optional[SpeechUpstream] = None,
    text_upstream: Optional[TextUpstream] = None,
    voice_clone_upstream: Optional[VoiceCloneUpstream] = None,
    start_sweepers: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Configuration; defaults to :func:`get_settings`.
        speech_upstream: Metered speech synthesis call.
        text_upstream: Metered text generation call.
        voice_clone_upstream: Voice clone training call (never cached).
        start_sweepers: Run background sweeps (disable in tests).

    Returns:
        Configured FastAPI instance.
    """
    settings = settings or get_settings()

    cache_store = CacheStore.from_settings(settings, start_sweeper=start_sweepers)
    limiters = RateLimiterRegistry.from_settings(settings, start_sweepers=start_sweepers)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        limiters.close()
        cache_store.close()
        logger.info("callshield components shut down")

    app = FastAPI(
        title="callshield",
        description="Response cache and admission control for metered AI services",
        version=settings.api.version,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.start_time = time.time()
    app.state.cache_store = cache_store
    app.state.limiters = limiters
    app.state.gateway = CallGateway(cache_store, limiters)
    app.state.stats_collector = StatsCollector(cache_store, limiters.items())
    app.state.speech_upstream = speech_upstream
    app.state.text_upstream = text_upstream
    app.state.voice_clone_upstream = voice_clone_upstream

    # -- CORS --
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Global rate limiting middleware --
    @app.middleware("http")
    async def global_rate_limit(request: Request, call_next: Any) -> Response:
        """Resolve the client and apply the ``global`` limiter."""
        peer = request.client.host if request.client else None
        client_id = resolve_client_id(request.headers, peer)
        request.state.client_id = client_id

        registry: RateLimiterRegistry = request.app.state.limiters
        if request.url.path in _UNLIMITED_PATHS or "global" not in registry:
            return await call_next(request)

        limiter = registry.get("global")
        result = limiter.admit(client_id)
        if not result.allowed:
            return _error_response(
                429,
                "rate_limited",
                limiter.config.message,
                headers=result.headers(),
                retry_after=result.retry_after_seconds,
            )

        response: Response = await call_next(request)
        # Per-operation headers, when present, are the more specific ones.
        for name, value in result.headers().items():
            if name not in response.headers:
                response.headers[name] = value
        return response

    # -- Exception handlers --
    @app.exception_handler(RateLimitedError)
    async def rate_limited_handler(request: Request, exc: RateLimitedError) -> Response:
        headers = exc.admit_result.headers() if exc.admit_result is not None else {
            "Retry-After": str(exc.retry_after_seconds)
        }
        return _error_response(
            429,
            "rate_limited",
            exc.message,
            headers=headers,
            retry_after=exc.retry_after_seconds,
        )

    @app.exception_handler(InvalidParamsError)
    async def invalid_params_handler(request: Request, exc: InvalidParamsError) -> Response:
        return _error_response(400, "invalid_params", str(exc), details=exc.errors)

    @app.exception_handler(UpstreamNotConfiguredError)
    async def upstream_missing_handler(
        request: Request, exc: UpstreamNotConfiguredError
    ) -> Response:
        return _error_response(503, "upstream_unavailable", str(exc))

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError) -> Response:
        logger.warning(
            "Upstream call failed",
            extra={"path": request.url.path, "error": str(exc)},
        )
        return _error_response(502, "upstream_error", str(exc))

    @app.exception_handler(CallShieldException)
    async def callshield_exception_handler(
        request: Request, exc: CallShieldException
    ) -> Response:
        status_code = 500 if isinstance(exc, ConfigurationError) else 400
        error_type = exc.__class__.__name__.replace("Error", "").lower()
        return _error_response(status_code, error_type, str(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> Response:
        """Catch-all handler for unhandled exceptions."""
        logger.error(
            "Unhandled exception",
            extra={"path": request.url.path, "error": str(exc)},
            exc_info=True,
        )
        return _error_response(
            500, "internal_server_error", "An unexpected error occurred"
        )

    # -- Routes --

    @app.get("/health", response_model=HealthResponse)
    def health(request: Request) -> HealthResponse:
        store: CacheStore = request.app.state.cache_store
        return HealthResponse(
            status="healthy",
            version=settings.api.version,
            uptime_seconds=round(time.time() - request.app.state.start_time, 3),
            components={
                "cache": "healthy",
                "persistence": "durable" if store.persistent else "memory-only",
                "rate_limiter": "healthy",
            },
        )

    @app.post("/api/tts/synthesize", response_model=SynthesisResponse)
    def synthesize(
        request: Request,
        response: Response,
        body: Dict[str, Any] = Body(...),
    ) -> SynthesisResponse:
        upstream: Optional[SpeechUpstream] = request.app.state.speech_upstream
        if upstream is None:
            raise UpstreamNotConfiguredError("Speech synthesis upstream is not configured")

        def _call(params: SpeechParams) -> Dict[str, Any]:
            return {"audio": upstream(params), "encoding": params.encoding}

        gateway: CallGateway = request.app.state.gateway
        result = gateway.call_cached(
            "tts", _client_id(request), body, _call,
            ttl_seconds=settings.cache.default_ttl_seconds,
        )
        _apply_headers(response, result)

        audio: bytes = result.value["audio"]
        encoding = result.value.get("encoding", "mp3")
        return SynthesisResponse(
            data=SynthesisData(
                audio_url=f"data:audio/{encoding};base64,"
                + base64.b64encode(audio).decode("ascii"),
                audio_size=len(audio),
                encoding=encoding,
                cached=result.cached,
            )
        )

    @app.post("/api/ark/generate", response_model=GenerationResponse)
    def generate(
        request: Request,
        response: Response,
        body: Dict[str, Any] = Body(...),
    ) -> GenerationResponse:
        upstream: Optional[TextUpstream] = request.app.state.text_upstream
        if upstream is None:
            raise UpstreamNotConfiguredError("Text generation upstream is not configured")

        gateway: CallGateway = request.app.state.gateway
        result = gateway.call_cached(
            "ark", _client_id(request), body, upstream,
            ttl_seconds=settings.cache.default_ttl_seconds,
        )
        _apply_headers(response, result)
        return GenerationResponse(data=result.value, cached=result.cached)

    @app.post("/api/voice-clone/train", response_model=PassThroughResponse)
    def train_voice(
        request: Request,
        response: Response,
        body: Dict[str, Any] = Body(...),
    ) -> PassThroughResponse:
        upstream: Optional[VoiceCloneUpstream] = request.app.state.voice_clone_upstream
        if upstream is None:
            raise UpstreamNotConfiguredError("Voice clone upstream is not configured")

        gateway: CallGateway = request.app.state.gateway
        result = gateway.call_uncached(
            "voice_clone", _client_id(request), lambda: upstream(body)
        )
        _apply_headers(response, result)
        return PassThroughResponse(data=result.value)

    @app.get("/api/tts/cache/stats", response_model=CacheStatsResponse)
    def cache_stats(request: Request, response: Response) -> CacheStatsResponse:
        _enforce_limit(request, response, "tts")
        collector: StatsCollector = request.app.state.stats_collector
        return CacheStatsResponse(data=collector.cache_report().model_dump())

    @app.delete("/api/tts/cache", response_model=CacheClearResponse)
    def clear_cache(request: Request, response: Response) -> CacheClearResponse:
        _enforce_limit(request, response, "tts")
        store: CacheStore = request.app.state.cache_store
        return CacheClearResponse(entries_removed=store.clear())

    @app.get("/api/dashboard/stats", response_model=CacheStatsResponse)
    def dashboard_stats(request: Request, top_n: int = 10) -> CacheStatsResponse:
        collector: StatsCollector = request.app.state.stats_collector
        return CacheStatsResponse(data=collector.snapshot(top_n=top_n))

    return app
