"""
JSON helpers for model output.

Models wrap JSON in markdown fences or chat around it; ``sanitize_json_response``
cuts the payload out before parsing, and ``validate_against`` reports every
schema violation rather than the first one.
"""

import json
import os
import re
from typing import Any, Dict, List

from jsonschema import Draft7Validator

_SCHEMA_DIR = os.path.join(os.path.dirname(__file__), "..", "json_schema")
_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)

_schemas: Dict[str, Dict[str, Any]] = {}


def load_schema(name: str) -> Dict[str, Any]:
    """Load ``json_schema/<name>.schema.json`` (cached)."""
    if name not in _schemas:
        path = os.path.join(_SCHEMA_DIR, f"{name}.schema.json")
        with open(path, "r", encoding="utf-8") as f:
            _schemas[name] = json.load(f)
    return _schemas[name]


def sanitize_json_response(text: str) -> str:
    """Strip code fences and any text outside the outermost JSON value."""
    cleaned = _FENCE_RE.sub("", text or "").strip()

    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
    if not starts:
        return cleaned
    cleaned = cleaned[min(starts):]

    end = max(cleaned.rfind("}"), cleaned.rfind("]"))
    if end != -1:
        cleaned = cleaned[: end + 1]
    return cleaned


def schema_errors(instance: Any, schema: Dict[str, Any]) -> List[str]:
    """Return human-readable violations, empty when ``instance`` is valid."""
    validator = Draft7Validator(schema)
    errors = []
    for error in sorted(validator.iter_errors(instance), key=lambda e: list(e.path)):
        location = "/".join(str(p) for p in error.path) or "<root>"
        errors.append(f"{location}: {error.message}")
    return errors
