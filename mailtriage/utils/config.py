import copy
import json
import os
from typing import Any, Dict, Optional

from jsonschema import ValidationError, validate

from .logger import logger

"""
Configuration loader for mailtriage.

Behavior:
- Looks for config path in the explicit argument, then env var `MAILTRIAGE_CONFIG`.
- Falls back to `mailtriage/config.json` next to the package.
- The first file that parses and validates wins; it is deep-merged over defaults.
- If none is found, conservative defaults are used.
"""

_DEFAULT_CONFIG: Dict[str, Any] = {
    "provider": {
        "name": "gemini",
        "model": "gemini-2.5-flash",
        "timeout_seconds": 30,
        "max_output_tokens": 2048,
        "temperature": 0.3,
    },
    "batch": {"size": 10, "delay_seconds": 0.5},
    "rate_limit": {"requests_per_minute": 15, "acquire_timeout_seconds": 30},
    "continuation": {
        "host_max_execution_seconds": 360,
        "safety_margin_seconds": 90,
        "follow_up_delay_seconds": 2,
        "max_continuations": 20,
        "state_ttl_hours": 24,
        "checkpoint_headroom_seconds": 15,
    },
    "scan": {
        "full_scan_limit": 100,
        "delta_window_days": 7,
        "cursor_max_age_days": 30,
    },
    "labels": {
        "processed": "ai-processed",
        "error": "ai-error",
        "blocked": "ai-guardrails-blocked",
        "reply_labels": ["support"],
        "allowed": None,
    },
    "redaction": {"redact_for_classification": True, "map_ttl_seconds": 21600},
    "label_cache": {"ttl_hours": 24},
    "guardrails": {"max_length": 1000, "max_links": 2},
    "dispatch": {"record_ttl_days": 7},
    "state_path": os.path.join(os.path.expanduser("~"), ".mailtriage", "state.json"),
    "log_level": "INFO",
}

_SCHEMA_PATH = os.path.join(
    os.path.dirname(__file__), "..", "json_schema", "config.schema.json"
)

_config_cache: Dict[str, Any] = {}
_schema_cache: Dict[str, Any] = {}


def _default_config_path() -> str:
    base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    return os.path.join(base_dir, "config.json")


def default_config() -> Dict[str, Any]:
    """Return a fresh copy of the built-in defaults."""
    return copy.deepcopy(_DEFAULT_CONFIG)


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from JSON with sensible fallbacks.

    Returns a dictionary with every section populated. Invalid candidate
    files are logged and skipped.
    """
    global _config_cache
    if _config_cache:
        return _config_cache

    env_path = os.environ.get("MAILTRIAGE_CONFIG")
    candidates = []
    if path:
        candidates.append(path)
    if env_path:
        candidates.append(env_path)
    candidates.append(_default_config_path())

    for p in candidates:
        p_abs = os.path.abspath(p)
        if not os.path.exists(p_abs):
            continue
        try:
            with open(p_abs, "r", encoding="utf-8") as f:
                cfg = json.load(f)
            validate_config(cfg)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in config file {p}: {e}")
            continue
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Failed to load config {p}: {e}")
            continue
        _config_cache = merge_config(_DEFAULT_CONFIG, cfg)
        logger.info(f"Configuration loaded from {p_abs}")
        return _config_cache

    logger.warning(
        "No config found; using default conservative configuration. "
        "Set MAILTRIAGE_CONFIG or create 'mailtriage/config.json' to customize."
    )
    _config_cache = default_config()
    return _config_cache


def reset_config_cache() -> None:
    """Forget the cached configuration (tests, CLI reloads)."""
    global _config_cache
    _config_cache = {}


def _load_schema() -> Dict[str, Any]:
    if not _schema_cache:
        with open(_SCHEMA_PATH, "r", encoding="utf-8") as f:
            _schema_cache.update(json.load(f))
    return _schema_cache


def validate_config(cfg: Dict[str, Any]) -> None:
    """Validate configuration using a JSON Schema.

    This uses the schema defined in `mailtriage/json_schema/config.schema.json`.
    Raises jsonschema.ValidationError on invalid configs.
    """
    if not isinstance(cfg, dict):
        raise ValueError("Configuration must be a JSON object/dict")

    validate(instance=cfg, schema=_load_schema())
