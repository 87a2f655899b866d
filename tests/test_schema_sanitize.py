import copy

from toolhost.tools.schema import ensure_object_schema, sanitize_schema


def test_unsupported_string_format_is_dropped():
    out = sanitize_schema({"type": "string", "format": "email"})
    assert out == {"type": "string"}


def test_enum_and_date_time_formats_are_kept():
    assert sanitize_schema({"type": "string", "format": "enum"})["format"] == "enum"
    assert sanitize_schema({"type": "string", "format": "date-time"})["format"] == "date-time"


def test_nested_properties_and_items_are_cleaned_without_mutating_input():
    schema = {
        "type": "object",
        "properties": {
            "contact": {
                "type": "object",
                "properties": {
                    "email": {"type": "string", "format": "email"},
                    "since": {"type": "string", "format": "date-time"},
                },
            },
            "links": {"type": "array", "items": {"type": "string", "format": "uri"}},
            "either": {"anyOf": [{"type": "string", "format": "uuid"}, {"type": "integer"}]},
            "count": {"type": "integer", "format": "int32"},
        },
        "required": ["contact"],
    }
    original = copy.deepcopy(schema)

    out = sanitize_schema(schema)

    assert schema == original
    props = out["properties"]
    assert "format" not in props["contact"]["properties"]["email"]
    assert props["contact"]["properties"]["since"]["format"] == "date-time"
    assert "format" not in props["links"]["items"]
    assert "format" not in props["either"]["anyOf"][0]
    # Only string formats are touched.
    assert props["count"]["format"] == "int32"
    assert out["required"] == ["contact"]


def test_ensure_object_schema_normalizes_bare_shapes():
    assert ensure_object_schema(None) == {"type": "object", "properties": {}}
    assert ensure_object_schema({"properties": {"a": {"type": "string"}}})["type"] == "object"
    wrapped = ensure_object_schema({"a": {"type": "string"}})
    assert wrapped == {"type": "object", "properties": {"a": {"type": "string"}}}


def test_ensure_object_schema_keeps_keyword_only_schemas():
    assert ensure_object_schema({"additionalProperties": False}) == {
        "additionalProperties": False,
        "type": "object",
        "properties": {},
    }
    assert ensure_object_schema({"additionalProperties": {"type": "string"}})["properties"] == {}
    assert ensure_object_schema({"$schema": "http://json-schema.org/draft-07/schema#"})["properties"] == {}
