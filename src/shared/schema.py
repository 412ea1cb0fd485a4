"""JSON Schema validation utilities."""

import re
from typing import Any, Optional

from jsonschema import Draft7Validator
from jsonschema import ValidationError as JSONSchemaError

_REQUIRED_PROPERTY = re.compile(r"^'(?P<name>[^']+)' is a required property$")

_JSON_TYPE_NAMES = {
    dict: "object",
    list: "array",
    str: "string",
    bool: "boolean",
    int: "integer",
    float: "number",
    type(None): "null",
}


def json_type_name(value: Any) -> str:
    """Return the JSON Schema type name for a Python value."""
    return _JSON_TYPE_NAMES.get(type(value), type(value).__name__)


def _error_field(error: JSONSchemaError) -> str:
    path = [str(p) for p in error.absolute_path]
    if error.validator == "required":
        match = _REQUIRED_PROPERTY.match(error.message)
        if match:
            path.append(match.group("name"))
    return ".".join(path)


def _expected(error: JSONSchemaError) -> Optional[str]:
    if error.validator in ("type", "enum", "const"):
        return str(error.validator_value)
    return None


def schema_violations(data: Any, schema: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Validate data against a JSON Schema and describe every violation.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        One dict per violation with field, message, code, expected and received.
        Empty when the data is valid.
    """
    if not schema:
        return []

    validator = Draft7Validator(schema)
    errors = list(validator.iter_errors(data))

    return [
        {
            "field": _error_field(e),
            "message": e.message,
            "code": str(e.validator),
            "expected": _expected(e),
            "received": None if e.validator == "required" else json_type_name(e.instance),
        }
        for e in errors
    ]
