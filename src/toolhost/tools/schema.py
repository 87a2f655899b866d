"""
JSON schema clean-up for tool input schemas reported by external servers.
"""

from __future__ import annotations

from typing import Any, Dict

# String formats the calling agent's schema consumer understands.
ALLOWED_STRING_FORMATS = frozenset({"enum", "date-time"})

_NESTED_MAPS = ("properties", "patternProperties", "definitions", "$defs")
_NESTED_LISTS = ("anyOf", "oneOf", "allOf", "prefixItems")


def _is_string_schema(schema: Dict[str, Any]) -> bool:
    t = schema.get("type")
    if isinstance(t, list):
        return "string" in t
    return t == "string"


def sanitize_schema(schema: Any) -> Any:
    """Return a cleaned copy; unsupported string formats are dropped recursively."""
    if isinstance(schema, list):
        return [sanitize_schema(s) for s in schema]
    if not isinstance(schema, dict):
        return schema

    out: Dict[str, Any] = {}
    for key, value in schema.items():
        if key in _NESTED_MAPS and isinstance(value, dict):
            out[key] = {k: sanitize_schema(v) for k, v in value.items()}
        elif key in _NESTED_LISTS and isinstance(value, list):
            out[key] = [sanitize_schema(v) for v in value]
        elif key in ("items", "additionalProperties", "not") and isinstance(value, (dict, list)):
            out[key] = sanitize_schema(value)
        else:
            out[key] = value

    if _is_string_schema(out) and "format" in out and out["format"] not in ALLOWED_STRING_FORMATS:
        del out["format"]
    return out


SCHEMA_KEYWORDS = frozenset(
    {
        "$schema", "$id", "$defs", "definitions", "title", "description", "type", "properties",
        "required", "additionalProperties", "patternProperties", "items", "allOf", "anyOf", "oneOf", "not",
    }
)


def ensure_object_schema(schema: Any) -> Dict[str, Any]:
    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}}
    if schema.get("type") != "object":
        # Some servers send a bare property map instead of a schema.
        if schema and all(isinstance(v, dict) for v in schema.values()) and not SCHEMA_KEYWORDS & schema.keys():
            schema = {"type": "object", "properties": schema}
        else:
            schema = {**schema, "type": "object"}
    else:
        schema = dict(schema)
    schema.setdefault("properties", {})
    return schema
