import pytest

from coach_pipeline.json_schemas import (
    CRISIS_SCHEMA,
    DOMAIN_SCHEMA,
    PATTERN_RESPONSE_SCHEMA,
    PATTERN_SCHEMA,
    SchemaValidationError,
    validate_json,
    vertex_response_schema,
)

GOOD_PATTERN = {
    "theme": "Fear of judgment",
    "domains": ["career", "relationships"],
    "confidence": 0.9,
    "evidence": [{"domain": "career", "summary": "x"}],
    "synthesis": "You hold back when you expect criticism.",
}


def test_crisis_schema():
    validate_json({"crisis": True, "confidence": 0.8, "category": None}, CRISIS_SCHEMA)
    with pytest.raises(SchemaValidationError):
        validate_json({"crisis": True}, CRISIS_SCHEMA)
    with pytest.raises(SchemaValidationError):
        validate_json({"confidence": "high"}, CRISIS_SCHEMA)


def test_domain_schema_requires_domain():
    validate_json({"domain": "career"}, DOMAIN_SCHEMA)
    with pytest.raises(SchemaValidationError):
        validate_json({"confidence": 0.9}, DOMAIN_SCHEMA)


def test_pattern_schema_rejects_single_domain_and_bad_confidence():
    validate_json(GOOD_PATTERN, PATTERN_SCHEMA)
    validate_json({"patterns": [GOOD_PATTERN]}, PATTERN_RESPONSE_SCHEMA)
    with pytest.raises(SchemaValidationError):
        validate_json({**GOOD_PATTERN, "domains": ["career"]}, PATTERN_SCHEMA)
    with pytest.raises(SchemaValidationError) as ei:
        validate_json({**GOOD_PATTERN, "confidence": 1.5}, PATTERN_SCHEMA)
    assert "confidence" in str(ei.value)


def test_vertex_response_schema_strips_meta_and_nullable_types():
    out = vertex_response_schema(CRISIS_SCHEMA)
    assert "$schema" not in out
    assert out["properties"]["category"] == {"type": "string", "nullable": True}
    assert out["properties"]["confidence"]["type"] == "number"
    # The source schema is left untouched
    assert CRISIS_SCHEMA["properties"]["category"]["type"] == ["string", "null"]

    nested = vertex_response_schema(PATTERN_RESPONSE_SCHEMA)
    assert "$schema" not in nested
    assert "$schema" not in nested["properties"]["patterns"]["items"]
