"""Tests for CallGateway: admission, cache lookup and upstream dispatch."""

import pytest

from callshield.cache.keys import SpeechParams, derive_key, normalize
from callshield.cache.store import CacheStore
from callshield.exceptions import (
    InvalidParamsError,
    RateLimitedError,
    UpstreamError,
)
from callshield.gateway import CallGateway
from callshield.ratelimit.limiter import RateLimiterRegistry


class CountingUpstream:
    def __init__(self, result="audio", error=None):
        self.calls = []
        self.result = result
        self.error = error

    def __call__(self, params):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def store(clock):
    s = CacheStore(max_entries=10, clock=clock, start_sweeper=False)
    yield s
    s.close()


@pytest.fixture
def gateway(store, clock):
    limiters = RateLimiterRegistry.from_configs(
        {
            "tts": {"window_ms": 60_000, "max_requests": 3},
            "ark": {"window_ms": 60_000, "max_requests": 3},
            "voice_clone": {"window_ms": 60_000, "max_requests": 1},
        },
        clock=clock,
        start_sweepers=False,
    )
    yield CallGateway(store, limiters)
    limiters.close()


class TestCallCached:
    def test_miss_then_hit(self, gateway):
        upstream = CountingUpstream(b"mp3")
        first = gateway.call_cached("tts", "c", {"text": "hello"}, upstream)
        second = gateway.call_cached("tts", "c", {"text": " hello ", "speed": 0}, upstream)

        assert first.cached is False
        assert second.cached is True
        assert first.value == second.value == b"mp3"
        assert first.cache_key == second.cache_key
        assert len(upstream.calls) == 1
        assert isinstance(upstream.calls[0], SpeechParams)

    def test_accepts_normalized_params(self, gateway, store):
        params = normalize("tts", {"text": "hi"})
        result = gateway.call_cached("tts", "c", params, CountingUpstream())
        assert result.cache_key == derive_key(params)
        assert store.get(result.cache_key) == ("audio", True)

    def test_custom_ttl(self, gateway, clock):
        upstream = CountingUpstream()
        gateway.call_cached("tts", "c", {"text": "hi"}, upstream, ttl_seconds=5)
        clock.advance(5)
        gateway.call_cached("tts", "c", {"text": "hi"}, upstream)
        assert len(upstream.calls) == 2

    def test_upstream_failure_propagates_and_is_not_cached(self, gateway, store):
        failing = CountingUpstream(error=UpstreamError("vendor down"))
        with pytest.raises(UpstreamError, match="vendor down"):
            gateway.call_cached("tts", "c", {"text": "hi"}, failing)
        assert store.size == 0

        ok = CountingUpstream()
        result = gateway.call_cached("tts", "c", {"text": "hi"}, ok)
        assert result.cached is False
        assert len(ok.calls) == 1

    def test_invalid_params_rejected(self, gateway):
        upstream = CountingUpstream()
        with pytest.raises(InvalidParamsError):
            gateway.call_cached("tts", "c", {"text": ""}, upstream)
        assert upstream.calls == []

    def test_rate_limited_before_cache(self, gateway):
        upstream = CountingUpstream()
        for _ in range(3):
            gateway.call_cached("tts", "c", {"text": "hi"}, upstream)
        with pytest.raises(RateLimitedError) as exc_info:
            gateway.call_cached("tts", "c", {"text": "hi"}, upstream)
        assert exc_info.value.retry_after_seconds == 60
        assert len(upstream.calls) == 1

    def test_admit_result_attached(self, gateway):
        result = gateway.call_cached("ark", "c", {
            "model": "m", "messages": [{"role": "user", "content": "hi"}],
        }, CountingUpstream({"choices": []}))
        assert result.admit.allowed is True
        assert result.admit.remaining == 2
        assert result.latency_ms >= 0


class TestCallUncached:
    def test_passes_through(self, gateway, store):
        result = gateway.call_uncached("voice_clone", "c", lambda: {"job": 1})
        assert result.value == {"job": 1}
        assert result.cached is False
        assert result.cache_key is None
        assert store.size == 0

    def test_rate_limited(self, gateway):
        gateway.call_uncached("voice_clone", "c", lambda: None)
        with pytest.raises(RateLimitedError):
            gateway.call_uncached("voice_clone", "c", lambda: None)
