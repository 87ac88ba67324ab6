"""JSON Schema validation utilities."""

from typing import Any

from jsonschema import Draft7Validator


def compile_schema(schema: dict[str, Any]) -> Draft7Validator:
    """
    Check a tool argument schema and build a reusable validator.

    Raises:
        jsonschema.SchemaError: If the schema itself is invalid
    """
    Draft7Validator.check_schema(schema)
    return Draft7Validator(schema)


def collect_errors(validator: Draft7Validator, data: Any) -> list[str]:
    """Error messages for ``data``, ordered by the path they occur at."""
    errors = sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path])
    return [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

