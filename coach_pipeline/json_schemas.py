"""
JSON Schemas and validation helpers for classifier verdicts.

Schemas are kept small: they pin down field types so a loosely-typed model
response is rejected outright instead of being trusted. Enumeration coercion
(unknown domain -> general, unknown category -> none) happens in the
components after validation.
"""
from __future__ import annotations

from typing import Any, Dict

from jsonschema import Draft7Validator

CRISIS_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "crisis": {"type": "boolean"},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "category": {"type": ["string", "null"]},
        "reasoning": {"type": ["string", "null"]},
    },
    "required": ["confidence"],
}

# Confidence is deliberately absent: a missing or out-of-range value has its
# own fallback rules in the domain router.
DOMAIN_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "domain": {"type": "string"},
    },
    "required": ["domain"],
}

# What the model is asked to emit; the parse step above stays stricter about fields.
DOMAIN_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "domain": {"type": "string"},
        "confidence": {"type": "number"},
    },
    "required": ["domain", "confidence"],
}

PATTERN_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "theme": {"type": "string", "minLength": 1},
        "domains": {"type": "array", "items": {"type": "string", "minLength": 1}, "minItems": 2},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "evidence": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "domain": {"type": "string"},
                    "summary": {"type": "string"},
                },
                "required": ["domain", "summary"],
            },
        },
        "synthesis": {"type": "string", "minLength": 1},
    },
    "required": ["theme", "domains", "confidence", "evidence", "synthesis"],
}

PATTERN_RESPONSE_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "patterns": {"type": "array", "items": PATTERN_SCHEMA},
    },
    "required": ["patterns"],
}


class SchemaValidationError(ValueError):
    pass


def _sanitize_for_vertex(value: Any) -> Any:
    """Recursively adapt a JSON Schema dict to a Vertex-compatible response_schema.

    - Replace type arrays like ["string", "null"] with type="string" and nullable=True.
    - Drop "$schema" keys.
    """
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            if k == "$schema":
                continue
            out[k] = _sanitize_for_vertex(v)
        t = out.get("type")
        if isinstance(t, list):
            non_null = [x for x in t if x != "null"]
            out["type"] = non_null[0] if non_null else "string"
            if "null" in t:
                out["nullable"] = True
        return out
    if isinstance(value, list):
        return [_sanitize_for_vertex(v) for v in value]
    return value


def vertex_response_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Return a deep-copied, Vertex-compatible schema from a standard JSON Schema dict."""
    return _sanitize_for_vertex(schema)


def validate_json(instance: Any, schema: Dict[str, Any]) -> None:
    """Validate instance against schema; raise SchemaValidationError on failure."""
    v = Draft7Validator(schema)
    errors = sorted(v.iter_errors(instance), key=lambda e: str(list(e.path)))
    if errors:
        msgs = [f"{list(e.path)}: {e.message}" for e in errors]
        raise SchemaValidationError("; ".join(msgs))


__all__ = [
    "CRISIS_SCHEMA",
    "DOMAIN_SCHEMA",
    "DOMAIN_RESPONSE_SCHEMA",
    "PATTERN_SCHEMA",
    "PATTERN_RESPONSE_SCHEMA",
    "SchemaValidationError",
    "vertex_response_schema",
    "validate_json",
]
