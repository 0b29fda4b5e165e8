"""JSON Schema validation utilities."""

import copy
from typing import Any

from jsonschema import Draft7Validator


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


def apply_defaults(data: dict[str, Any], schema: dict[str, Any]) -> dict[str, Any]:
    """
    Fill in top-level property defaults declared by an object schema.

    Args:
        data: Arguments as supplied by the caller
        schema: Object schema whose ``properties`` may carry ``default`` values

    Returns:
        A new dictionary; ``data`` is left untouched
    """
    result = dict(data)
    for name, prop in (schema or {}).get("properties", {}).items():
        if name not in result and isinstance(prop, dict) and "default" in prop:
            result[name] = copy.deepcopy(prop["default"])
    return result


def check_schema(schema: dict[str, Any]) -> None:
    """
    Ensure a schema is itself valid Draft 7.

    Raises:
        jsonschema.SchemaError: If the schema is malformed
    """
    Draft7Validator.check_schema(schema)
