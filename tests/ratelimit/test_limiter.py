"""Tests for the fixed-window rate limiter and its registry."""

import threading
import time

import pytest

from callshield.config import DEFAULT_RATE_LIMITS
from callshield.exceptions import ConfigurationError, RateLimitedError
from callshield.ratelimit.limiter import (
    AdmitResult,
    RateLimitConfig,
    RateLimiter,
    RateLimiterRegistry,
)


def _limiter(clock, window_ms=60_000, max_requests=10, **kw):
    config = RateLimitConfig(window_ms=window_ms, max_requests=max_requests, **kw)
    return RateLimiter(config, name="test", clock=clock, start_sweeper=False)


class TestRateLimitConfig:
    def test_window_seconds(self):
        assert RateLimitConfig(window_ms=1500, max_requests=1).window_seconds == 1.5

    @pytest.mark.parametrize("raw", [
        {"window_ms": 0, "max_requests": 1},
        {"window_ms": 1000, "max_requests": 0},
        {"window_ms": -1, "max_requests": 5},
    ])
    def test_invalid_values_rejected(self, raw):
        with pytest.raises(ValueError):
            RateLimitConfig(**raw)


class TestAdmit:
    def test_first_request_opens_window(self, clock):
        limiter = _limiter(clock)
        result = limiter.admit("1.2.3.4")
        assert result.allowed is True
        assert result.remaining == 9
        assert result.limit == 10
        assert result.reset_at == clock.now + 60

    def test_budget_exhausted(self, clock):
        limiter = _limiter(clock)
        start = clock.now
        results = [limiter.admit("c") for _ in range(10)]
        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == list(range(9, -1, -1))

        clock.advance(5)
        denied = limiter.admit("c")
        assert denied.allowed is False
        assert denied.remaining == 0
        assert denied.reset_at >= start + 60

    def test_small_window_denies_fourth_call(self, clock):
        limiter = _limiter(clock, window_ms=1000, max_requests=3)
        results = [limiter.admit("c") for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert results[-1].remaining == 0

    def test_window_resets_at_boundary(self, clock):
        limiter = _limiter(clock, window_ms=1000, max_requests=2)
        limiter.admit("c")
        limiter.admit("c")
        assert limiter.admit("c").allowed is False

        clock.advance(1.0)
        result = limiter.admit("c")
        assert result.allowed is True
        assert result.remaining == 1
        assert limiter.snapshot()[0].count == 1

    def test_clients_are_independent(self, clock):
        limiter = _limiter(clock, max_requests=1)
        assert limiter.admit("a").allowed is True
        assert limiter.admit("a").allowed is False
        assert limiter.admit("b").allowed is True

    def test_empty_client_id_is_unknown(self, clock):
        limiter = _limiter(clock)
        limiter.admit("")
        assert limiter.snapshot()[0].client_id == "unknown"

    def test_denied_requests_still_counted(self, clock):
        limiter = _limiter(clock, max_requests=1)
        for _ in range(5):
            limiter.admit("c")
        assert limiter.snapshot()[0].count == 5
        assert limiter.counters() == {"admitted": 1, "denied": 4, "tracked_clients": 1}

    def test_concurrent_admission_never_over_admits(self, clock):
        limiter = _limiter(clock, max_requests=50)
        allowed = []
        lock = threading.Lock()

        def worker():
            for _ in range(25):
                result = limiter.admit("shared")
                with lock:
                    allowed.append(result.allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(allowed) == 50
        assert len(allowed) == 200


class TestAdmitResult:
    def _result(self, allowed, reset_at=1060.2, checked_at=1000.0):
        return AdmitResult(
            allowed=allowed,
            remaining=0 if not allowed else 4,
            reset_at=reset_at,
            limit=5,
            window_seconds=60.0,
            checked_at=checked_at,
        )

    def test_headers_when_allowed(self):
        headers = self._result(True).headers()
        assert headers == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "4",
            "X-RateLimit-Reset": "1061",
            "X-RateLimit-Window": "60",
        }

    def test_headers_when_denied(self):
        headers = self._result(False).headers()
        assert headers["Retry-After"] == "61"
        assert headers["X-RateLimit-Remaining"] == "0"

    def test_retry_after_at_least_one_when_denied(self):
        result = self._result(False, reset_at=1000.0, checked_at=1000.0)
        assert result.retry_after_seconds == 1

    def test_fractional_window_header(self):
        result = AdmitResult(
            allowed=True, remaining=1, reset_at=1.0, limit=2,
            window_seconds=1.5, checked_at=0.0,
        )
        assert result.headers()["X-RateLimit-Window"] == "1.5"


class TestEnforce:
    def test_enforce_returns_result(self, clock):
        assert _limiter(clock).enforce("c").allowed is True

    def test_enforce_raises_on_denial(self, clock):
        limiter = _limiter(clock, max_requests=1, message="slow down")
        limiter.enforce("c")
        clock.advance(10)
        with pytest.raises(RateLimitedError) as exc_info:
            limiter.enforce("c")
        exc = exc_info.value
        assert exc.message == "slow down"
        assert exc.retry_after_seconds == 50
        assert exc.admit_result.allowed is False


class TestSweep:
    def test_idle_windows_removed_after_grace(self, clock):
        limiter = _limiter(clock, window_ms=1000)
        limiter.admit("a")
        clock.advance(1.5)
        assert limiter.sweep() == 0
        clock.advance(0.5)
        assert limiter.sweep() == 1
        assert limiter.snapshot() == []

    def test_active_windows_kept(self, clock):
        limiter = _limiter(clock, window_ms=1000)
        limiter.admit("old")
        clock.advance(2)
        limiter.admit("new")
        assert limiter.sweep() == 1
        assert [w.client_id for w in limiter.snapshot()] == ["new"]

    def test_snapshot_is_a_copy(self, clock):
        limiter = _limiter(clock)
        limiter.admit("c")
        limiter.snapshot()[0].count = 99
        assert limiter.snapshot()[0].count == 1

    def test_background_sweep_removes_idle_windows(self):
        limiter = RateLimiter(RateLimitConfig(window_ms=50, max_requests=1), name="timer")
        try:
            limiter.admit("c")
            deadline = time.time() + 3
            while limiter.snapshot() and time.time() < deadline:
                time.sleep(0.05)
            assert limiter.snapshot() == []
        finally:
            limiter.close()

    def test_close_clears_and_is_idempotent(self, clock):
        config = RateLimitConfig(window_ms=50, max_requests=1)
        limiter = RateLimiter(config, clock=clock)
        limiter.admit("c")
        limiter.close()
        limiter.close()
        assert limiter.snapshot() == []


class TestRegistry:
    def test_from_presets(self, clock):
        registry = RateLimiterRegistry.from_configs(
            DEFAULT_RATE_LIMITS, clock=clock, start_sweepers=False
        )
        assert set(registry) == set(DEFAULT_RATE_LIMITS)
        assert registry.get("tts").config.max_requests == 20
        assert registry.get("voice_clone").config.window_seconds == 3600
        assert "ark" in registry
        registry.close()

    def test_unknown_class_raises(self, clock):
        registry = RateLimiterRegistry.from_configs({}, clock=clock, start_sweepers=False)
        with pytest.raises(ConfigurationError):
            registry.get("tts")

    def test_invalid_config_raises(self, clock):
        with pytest.raises(ConfigurationError, match="broken"):
            RateLimiterRegistry.from_configs(
                {
                    "ok": {"window_ms": 1000, "max_requests": 1},
                    "broken": {"window_ms": 0, "max_requests": 1},
                },
                clock=clock,
                start_sweepers=False,
            )

    def test_limiters_are_isolated(self, clock):
        registry = RateLimiterRegistry.from_configs(
            {
                "a": {"window_ms": 1000, "max_requests": 1},
                "b": {"window_ms": 1000, "max_requests": 1},
            },
            clock=clock,
            start_sweepers=False,
        )
        registry.get("a").admit("c")
        assert registry.get("a").admit("c").allowed is False
        assert registry.get("b").admit("c").allowed is True
        assert [name for name, _ in registry.items()] == ["a", "b"]
