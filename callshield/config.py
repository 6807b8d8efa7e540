"""
Central configuration loader for the callshield gateway.

Reads ``config/config.yaml`` and ``.env``, merges environment-variable
overrides (``CALLSHIELD_`` prefix), and exposes a typed :class:`Settings`
singleton via :func:`get_settings`.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Resolve project root (directory containing ``config/``)
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent          # callshield/
_PROJECT_ROOT = _THIS_DIR.parent                     # repo root


def _project_path(*parts: str) -> Path:
    """Build an absolute path relative to the project root."""
    return _PROJECT_ROOT.joinpath(*parts)


# ---------------------------------------------------------------------------
# Rate limit presets, one per protected operation class
# ---------------------------------------------------------------------------

DEFAULT_RATE_LIMITS: Dict[str, Dict[str, Any]] = {
    "global": {
        "window_ms": 15 * 60 * 1000,
        "max_requests": 1000,
        "message": "Too many requests, please try again later",
    },
    "strict": {
        "window_ms": 60 * 1000,
        "max_requests": 10,
        "message": "Operation attempted too often, please try again later",
    },
    "moderate": {
        "window_ms": 60 * 1000,
        "max_requests": 30,
        "message": "Too many requests, please try again later",
    },
    "loose": {
        "window_ms": 60 * 1000,
        "max_requests": 100,
        "message": "Too many requests, please try again later",
    },
    "tts": {
        "window_ms": 60 * 1000,
        "max_requests": 20,
        "message": "Too many speech synthesis requests, please try again later",
    },
    "ark": {
        "window_ms": 60 * 1000,
        "max_requests": 15,
        "message": "Too many text generation requests, please try again later",
    },
    "voice_clone": {
        "window_ms": 60 * 60 * 1000,
        "max_requests": 5,
        "message": "Too many voice clone requests, please try again later",
    },
}


# ---------------------------------------------------------------------------
# Nested settings dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ApiSettings:
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    version: str = "1.0.0"


@dataclass
class CacheSettings:
    max_entries: int = 100
    default_ttl_seconds: int = 3600
    storage_dir: str = "cache/tts"
    backend: str = "file"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "callshield:cache"
    sweep_interval_seconds: int = 600


@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class Settings:
    """Top-level settings container."""
    api: ApiSettings = field(default_factory=ApiSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    rate_limits: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_RATE_LIMITS.items()}
    )
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read and parse a YAML file.  Returns ``{}`` if the file is missing."""
    if not path.exists():
        logger.debug("Config file not found: %s", path)
        return {}
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    return data if isinstance(data, dict) else {}


def _apply_dict(target: object, data: Dict[str, Any]) -> None:
    """Apply *data* values onto a dataclass instance, ignoring unknown keys."""
    for key, value in data.items():
        if not hasattr(target, key):
            continue
        setattr(target, key, value)


def _merge_rate_limits(
    current: Dict[str, Dict[str, Any]], data: Dict[str, Any]
) -> None:
    """Overlay YAML rate limit classes onto the presets.

    A partial entry (e.g. only ``max_requests``) keeps the preset's other
    fields; an unknown class name adds a new limiter.
    """
    for name, overrides in data.items():
        if not isinstance(overrides, dict):
            logger.warning("Ignoring malformed rate limit entry: %s", name)
            continue
        merged = dict(current.get(name, {}))
        merged.update(overrides)
        current[name] = merged


# ---------------------------------------------------------------------------
# Env-var overrides  (CALLSHIELD_SECTION_KEY  e.g. CALLSHIELD_CACHE_MAX_ENTRIES)
# ---------------------------------------------------------------------------

_FLAT_SECTIONS = ["api", "cache", "logging"]

_TYPE_MAP = {
    int: int,
    float: float,
    bool: lambda v: v.lower() in ("1", "true", "yes"),
    str: str,
}

# Plain env names kept for deployments that predate the prefixed scheme.
_LEGACY_ALIASES = {
    "CACHE_MAX_SIZE": ("cache", "max_entries"),
    "CACHE_TTL": ("cache", "default_ttl_seconds"),
    "REDIS_URL": ("cache", "redis_url"),
}


def _set_from_env(section: object, key: str, env_key: str, env_val: str) -> None:
    current = getattr(section, key)
    cast = _TYPE_MAP.get(type(current), str)
    try:
        setattr(section, key, cast(env_val))
        logger.debug("Env override applied: %s=%s", env_key, env_val)
    except (ValueError, TypeError):
        logger.warning("Invalid env override %s=%s", env_key, env_val)


def _apply_env_overrides(settings: Settings) -> None:
    """Override flat scalar fields via ``CALLSHIELD_<SECTION>_<KEY>`` env vars."""
    for env_key, (section_name, key) in _LEGACY_ALIASES.items():
        env_val = os.environ.get(env_key)
        if env_val is not None:
            _set_from_env(getattr(settings, section_name), key, env_key, env_val)

    for section_name in _FLAT_SECTIONS:
        section = getattr(settings, section_name, None)
        if section is None:
            continue
        prefix = f"CALLSHIELD_{section_name.upper()}_"
        for key in list(vars(section)):
            env_key = prefix + key.upper()
            env_val = os.environ.get(env_key)
            if env_val is None:
                continue
            _set_from_env(section, key, env_key, env_val)

    # CALLSHIELD_RATE_LIMIT_<NAME>_<FIELD>, e.g. CALLSHIELD_RATE_LIMIT_TTS_MAX_REQUESTS
    for name, limit in settings.rate_limits.items():
        prefix = f"CALLSHIELD_RATE_LIMIT_{name.upper()}_"
        for key in ("window_ms", "max_requests"):
            env_val = os.environ.get(prefix + key.upper())
            if env_val is None:
                continue
            try:
                limit[key] = int(env_val)
            except ValueError:
                logger.warning("Invalid env override %s=%s", prefix + key.upper(), env_val)
        message = os.environ.get(prefix + "MESSAGE")
        if message is not None:
            limit["message"] = message


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Optional[Settings] = None
_lock = threading.Lock()


def load_settings(
    *,
    yaml_path: Optional[Path] = None,
    env_path: Optional[Path] = None,
) -> Settings:
    """Build a fresh :class:`Settings` from ``.env``, YAML and env overrides.

    Args:
        yaml_path: Override the YAML config file path.
        env_path: Override the ``.env`` file path.

    Returns:
        A new ``Settings`` instance (the singleton is not touched).
    """
    dotenv_path = env_path or _project_path(".env")
    load_dotenv(dotenv_path, override=True)

    config_path = yaml_path or _project_path("config", "config.yaml")
    raw = _load_yaml(config_path)

    settings = Settings()
    for section_name in _FLAT_SECTIONS:
        section_data = raw.get(section_name)
        if isinstance(section_data, dict):
            _apply_dict(getattr(settings, section_name), section_data)

    limits_data = raw.get("rate_limits")
    if isinstance(limits_data, dict):
        _merge_rate_limits(settings.rate_limits, limits_data)

    _apply_env_overrides(settings)
    logger.info("Settings loaded from %s", config_path)
    return settings


def get_settings(
    *,
    yaml_path: Optional[Path] = None,
    env_path: Optional[Path] = None,
    _force_reload: bool = False,
) -> Settings:
    """Return the application-wide :class:`Settings` singleton.

    On first call (or when ``_force_reload=True``) the function:

    1. Calls ``load_dotenv()`` to populate env vars from ``.env``.
    2. Reads ``config/config.yaml``.
    3. Applies ``CALLSHIELD_*`` environment-variable overrides.

    Args:
        yaml_path: Override the YAML config file path (testing).
        env_path: Override the ``.env`` file path (testing).
        _force_reload: Re-read everything even if already loaded.

    Returns:
        The global ``Settings`` instance.
    """
    global _settings

    if _settings is not None and not _force_reload:
        return _settings

    with _lock:
        # Double-check after acquiring lock
        if _settings is not None and not _force_reload:
            return _settings
        _settings = load_settings(yaml_path=yaml_path, env_path=env_path)
        return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for testing)."""
    global _settings
    with _lock:
        _settings = None
