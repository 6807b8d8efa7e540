"""Tests for the central configuration loader (callshield/config.py)."""

import pytest
import yaml

from callshield.config import (
    DEFAULT_RATE_LIMITS,
    ApiSettings,
    CacheSettings,
    Settings,
    _apply_dict,
    _load_yaml,
    _merge_rate_limits,
    get_settings,
    load_settings,
    reset_settings,
)


@pytest.fixture(autouse=True)
def _clean_settings():
    """Reset the singleton before and after each test."""
    reset_settings()
    yield
    reset_settings()


def _write_config(tmp_path, data):
    f = tmp_path / "config.yaml"
    f.write_text(yaml.dump(data))
    return f


# ── YAML loading ────────────────────────────────────────


class TestLoadYaml:
    def test_loads_valid_yaml(self, tmp_path):
        f = tmp_path / "cfg.yaml"
        f.write_text("cache:\n  max_entries: 7\n")
        assert _load_yaml(f)["cache"]["max_entries"] == 7

    def test_returns_empty_dict_for_missing_file(self, tmp_path):
        assert _load_yaml(tmp_path / "nonexistent.yaml") == {}

    def test_returns_empty_dict_for_non_dict_yaml(self, tmp_path):
        f = tmp_path / "cfg.yaml"
        f.write_text("- item1\n- item2\n")
        assert _load_yaml(f) == {}


# ── Settings defaults ───────────────────────────────────


class TestSettingsDefaults:
    def test_default_settings_have_expected_values(self):
        s = Settings()
        assert s.api.port == 8000
        assert s.cache.max_entries == 100
        assert s.cache.default_ttl_seconds == 3600
        assert s.cache.backend == "file"
        assert s.cache.sweep_interval_seconds == 600
        assert s.logging.level == "INFO"

    def test_default_rate_limit_presets(self):
        s = Settings()
        assert s.rate_limits["global"]["window_ms"] == 15 * 60 * 1000
        assert s.rate_limits["global"]["max_requests"] == 1000
        assert s.rate_limits["tts"]["max_requests"] == 20
        assert s.rate_limits["ark"]["max_requests"] == 15
        assert s.rate_limits["voice_clone"]["window_ms"] == 60 * 60 * 1000
        assert s.rate_limits["voice_clone"]["max_requests"] == 5

    def test_rate_limits_are_copied_per_instance(self):
        s = Settings()
        s.rate_limits["tts"]["max_requests"] = 1
        assert DEFAULT_RATE_LIMITS["tts"]["max_requests"] == 20
        assert Settings().rate_limits["tts"]["max_requests"] == 20


# ── get_settings() from YAML ────────────────────────────


class TestGetSettings:
    def test_loads_yaml_values(self, tmp_path):
        cfg = _write_config(tmp_path, {
            "api": {"port": 7777},
            "cache": {"max_entries": 5, "backend": "memory"},
        })
        s = get_settings(yaml_path=cfg, env_path=tmp_path / ".env", _force_reload=True)
        assert s.api.port == 7777
        assert s.cache.max_entries == 5
        assert s.cache.backend == "memory"

    def test_missing_yaml_uses_defaults(self, tmp_path):
        s = get_settings(
            yaml_path=tmp_path / "nope.yaml",
            env_path=tmp_path / ".env",
            _force_reload=True,
        )
        assert s.api.port == 8000

    def test_singleton_returns_same_object(self, tmp_path):
        cfg = _write_config(tmp_path, {"api": {"port": 5555}})
        s1 = get_settings(yaml_path=cfg, env_path=tmp_path / ".env", _force_reload=True)
        s2 = get_settings()
        assert s1 is s2

    def test_force_reload_reloads(self, tmp_path):
        cfg = _write_config(tmp_path, {"api": {"port": 1111}})
        env = tmp_path / ".env"
        assert get_settings(yaml_path=cfg, env_path=env, _force_reload=True).api.port == 1111

        cfg.write_text(yaml.dump({"api": {"port": 2222}}))
        assert get_settings(yaml_path=cfg, env_path=env, _force_reload=True).api.port == 2222

    def test_load_settings_does_not_touch_singleton(self, tmp_path):
        cfg = _write_config(tmp_path, {"api": {"port": 3333}})
        env = tmp_path / ".env"
        singleton = get_settings(yaml_path=cfg, env_path=env, _force_reload=True)
        fresh = load_settings(yaml_path=cfg, env_path=env)
        assert fresh is not singleton
        assert get_settings() is singleton

    def test_partial_rate_limit_keeps_preset_fields(self, tmp_path):
        cfg = _write_config(tmp_path, {"rate_limits": {"tts": {"max_requests": 3}}})
        s = get_settings(yaml_path=cfg, env_path=tmp_path / ".env", _force_reload=True)
        assert s.rate_limits["tts"]["max_requests"] == 3
        assert s.rate_limits["tts"]["window_ms"] == 60 * 1000

    def test_new_rate_limit_class_added(self, tmp_path):
        cfg = _write_config(tmp_path, {
            "rate_limits": {"upload": {"window_ms": 1000, "max_requests": 2}},
        })
        s = get_settings(yaml_path=cfg, env_path=tmp_path / ".env", _force_reload=True)
        assert s.rate_limits["upload"] == {"window_ms": 1000, "max_requests": 2}
        assert "global" in s.rate_limits


# ── Environment variable overrides ──────────────────────


class TestEnvOverrides:
    def test_env_override_int(self, tmp_path, monkeypatch):
        cfg = _write_config(tmp_path, {"api": {"port": 8000}})
        monkeypatch.setenv("CALLSHIELD_API_PORT", "9999")
        s = get_settings(yaml_path=cfg, env_path=tmp_path / ".env", _force_reload=True)
        assert s.api.port == 9999

    def test_env_override_string(self, tmp_path, monkeypatch):
        cfg = _write_config(tmp_path, {})
        monkeypatch.setenv("CALLSHIELD_CACHE_STORAGE_DIR", "/custom/cache")
        s = get_settings(yaml_path=cfg, env_path=tmp_path / ".env", _force_reload=True)
        assert s.cache.storage_dir == "/custom/cache"

    def test_env_overrides_trump_yaml(self, tmp_path, monkeypatch):
        cfg = _write_config(tmp_path, {"cache": {"max_entries": 30}})
        monkeypatch.setenv("CALLSHIELD_CACHE_MAX_ENTRIES", "40")
        s = get_settings(yaml_path=cfg, env_path=tmp_path / ".env", _force_reload=True)
        assert s.cache.max_entries == 40

    def test_invalid_int_override_is_ignored(self, tmp_path, monkeypatch):
        cfg = _write_config(tmp_path, {})
        monkeypatch.setenv("CALLSHIELD_CACHE_MAX_ENTRIES", "lots")
        s = get_settings(yaml_path=cfg, env_path=tmp_path / ".env", _force_reload=True)
        assert s.cache.max_entries == 100

    def test_legacy_cache_variables(self, tmp_path, monkeypatch):
        cfg = _write_config(tmp_path, {})
        monkeypatch.setenv("CACHE_MAX_SIZE", "12")
        monkeypatch.setenv("CACHE_TTL", "60")
        s = get_settings(yaml_path=cfg, env_path=tmp_path / ".env", _force_reload=True)
        assert s.cache.max_entries == 12
        assert s.cache.default_ttl_seconds == 60

    def test_prefixed_variable_beats_legacy(self, tmp_path, monkeypatch):
        cfg = _write_config(tmp_path, {})
        monkeypatch.setenv("CACHE_MAX_SIZE", "12")
        monkeypatch.setenv("CALLSHIELD_CACHE_MAX_ENTRIES", "24")
        s = get_settings(yaml_path=cfg, env_path=tmp_path / ".env", _force_reload=True)
        assert s.cache.max_entries == 24

    def test_rate_limit_override(self, tmp_path, monkeypatch):
        cfg = _write_config(tmp_path, {})
        monkeypatch.setenv("CALLSHIELD_RATE_LIMIT_TTS_MAX_REQUESTS", "2")
        monkeypatch.setenv("CALLSHIELD_RATE_LIMIT_VOICE_CLONE_WINDOW_MS", "5000")
        monkeypatch.setenv("CALLSHIELD_RATE_LIMIT_ARK_MESSAGE", "slow down")
        s = get_settings(yaml_path=cfg, env_path=tmp_path / ".env", _force_reload=True)
        assert s.rate_limits["tts"]["max_requests"] == 2
        assert s.rate_limits["voice_clone"]["window_ms"] == 5000
        assert s.rate_limits["ark"]["message"] == "slow down"

    def test_dotenv_file_is_read(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CALLSHIELD_API_PORT", raising=False)
        env = tmp_path / ".env"
        env.write_text("CALLSHIELD_API_PORT=6543\n")
        cfg = _write_config(tmp_path, {})
        try:
            s = get_settings(yaml_path=cfg, env_path=env, _force_reload=True)
            assert s.api.port == 6543
        finally:
            monkeypatch.delenv("CALLSHIELD_API_PORT", raising=False)


# ── helpers ─────────────────────────────────────────────


class TestApplyDict:
    def test_applies_known_keys(self):
        target = ApiSettings()
        _apply_dict(target, {"port": 1234, "host": "localhost"})
        assert target.port == 1234
        assert target.host == "localhost"

    def test_ignores_unknown_keys(self):
        target = CacheSettings()
        _apply_dict(target, {"unknown_field": "value"})
        assert target.max_entries == 100


class TestMergeRateLimits:
    def test_ignores_malformed_entry(self):
        current = {"tts": {"window_ms": 1000, "max_requests": 1}}
        _merge_rate_limits(current, {"tts": 5})
        assert current["tts"]["max_requests"] == 1


# ── Integration: real config/config.yaml ─────────────────


class TestRealConfig:
    def test_loads_project_config_yaml(self, tmp_path):
        """The shipped config/config.yaml loads and matches the presets."""
        s = get_settings(env_path=tmp_path / ".env", _force_reload=True)
        assert s.cache.max_entries == 100
        assert s.cache.default_ttl_seconds == 3600
        assert s.rate_limits["tts"]["max_requests"] == 20
