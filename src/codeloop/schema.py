"""Validation of tool input against the JSON schema a tool declares.

Covers the subset of JSON Schema that tool definitions use: ``type``,
``enum``, ``required``, ``properties``, ``additionalProperties: false``,
``items``, string length, numeric bounds and ``anyOf``/``oneOf``.
Unknown keywords are ignored.
"""

from __future__ import annotations

import re
from typing import Any

_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}

_KNOWN_TYPES = set(_TYPES) | {"null"}


def check_schema(schema: Any) -> None:
    """Raise ``ValueError`` if ``schema`` is not a usable object schema."""
    if not isinstance(schema, dict):
        raise ValueError("input schema must be a JSON object")
    if schema.get("type", "object") != "object":
        raise ValueError("input schema must describe an object")
    _check_node(schema, "")


def _check_node(schema: dict, path: str) -> None:
    schema_type = schema.get("type")
    types = schema_type if isinstance(schema_type, list) else [schema_type] if schema_type else []
    for t in types:
        if t not in _KNOWN_TYPES:
            raise ValueError(f"{path or '<root>'}: unknown type {t!r}")
    properties = schema.get("properties", {})
    if not isinstance(properties, dict):
        raise ValueError(f"{path or '<root>'}: properties must be an object")
    for name, sub in properties.items():
        if not isinstance(sub, dict):
            raise ValueError(f"{_join(path, name)}: property schema must be an object")
        _check_node(sub, _join(path, name))
    items = schema.get("items")
    if isinstance(items, dict):
        _check_node(items, f"{path}[]")


def validate(value: Any, schema: dict[str, Any], path: str = "") -> list[str]:
    """Return one message per problem, ``"<path>: <problem>"``; empty when valid."""
    errors: list[str] = []
    if not schema:
        return errors

    schema_type = schema.get("type")
    if schema_type:
        types = schema_type if isinstance(schema_type, list) else [schema_type]
        if not any(_is_type(value, t) for t in types):
            errors.append(_message(path, f"expected {' or '.join(types)}, got {_type_name(value)}"))
            return errors

    if "enum" in schema and value not in schema["enum"]:
        errors.append(_message(path, f"value must be one of: {schema['enum']}"))

    if isinstance(value, str):
        if "minLength" in schema and len(value) < schema["minLength"]:
            errors.append(_message(path, f"string length must be >= {schema['minLength']}"))
        if "maxLength" in schema and len(value) > schema["maxLength"]:
            errors.append(_message(path, f"string length must be <= {schema['maxLength']}"))
        if "pattern" in schema and not re.search(schema["pattern"], value):
            errors.append(_message(path, f"string must match pattern: {schema['pattern']}"))

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if "minimum" in schema and value < schema["minimum"]:
            errors.append(_message(path, f"value must be >= {schema['minimum']}"))
        if "maximum" in schema and value > schema["maximum"]:
            errors.append(_message(path, f"value must be <= {schema['maximum']}"))

    if isinstance(value, dict):
        properties = schema.get("properties", {})
        for name in schema.get("required", []):
            if name not in value:
                errors.append(_message(_join(path, name), "required field missing"))
        for name, item in value.items():
            if name in properties:
                errors.extend(validate(item, properties[name], _join(path, name)))
            elif schema.get("additionalProperties") is False:
                errors.append(_message(_join(path, name), "unexpected field"))

    if isinstance(value, list) and isinstance(schema.get("items"), dict):
        for i, item in enumerate(value):
            errors.extend(validate(item, schema["items"], f"{path}[{i}]"))

    if "anyOf" in schema and not any(not validate(value, sub, path) for sub in schema["anyOf"]):
        errors.append(_message(path, f"must match at least one of {len(schema['anyOf'])} schemas"))

    if "oneOf" in schema:
        matches = sum(1 for sub in schema["oneOf"] if not validate(value, sub, path))
        if matches != 1:
            errors.append(_message(path, f"must match exactly one of {len(schema['oneOf'])} schemas"))

    return errors


def _is_type(value: Any, expected: str) -> bool:
    if expected == "null":
        return value is None
    python_type = _TYPES.get(expected)
    if python_type is None:
        return True
    if isinstance(value, bool) and expected != "boolean":
        return False
    return isinstance(value, python_type)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    for name in ("boolean", "string", "integer", "number", "array", "object"):
        if _is_type(value, name):
            return name
    return type(value).__name__


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


def _message(path: str, problem: str) -> str:
    return f"{path}: {problem}" if path else problem
