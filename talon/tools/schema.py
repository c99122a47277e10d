"""Validation of model-supplied tool arguments against a tool's parameter schema."""

from typing import Any, Union

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, ValidationError, best_match

from talon.exceptions import SchemaValidationError

# Closed set of values a model may pass as a tool argument.
ArgumentValue = Union[str, int, float, bool, None, list["ArgumentValue"], dict[str, "ArgumentValue"]]
Arguments = dict[str, ArgumentValue]


def strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Treat an object schema with declared properties as closed unless it says otherwise."""
    effective = {"type": "object", **schema}
    if "properties" in effective and "additionalProperties" not in effective:
        effective["additionalProperties"] = False
    return effective


def build_validator(tool_name: str, schema: dict[str, Any]) -> Draft202012Validator:
    """Compile a tool's parameter schema, failing fast on a malformed schema."""
    strict = strict_schema(schema or {})
    try:
        Draft202012Validator.check_schema(strict)
    except SchemaError as e:
        raise ValueError(f"Tool '{tool_name}' declares an invalid parameter schema: {e.message}") from e
    return Draft202012Validator(strict)


def _format_path(error: ValidationError) -> str:
    return "/".join(str(part) for part in error.absolute_path)


def validate_arguments(
    tool_name: str,
    validator: Draft202012Validator,
    arguments: Any,
) -> Arguments:
    """Validate arguments for a tool call.

    Returns the arguments unchanged when valid.

    Raises:
        SchemaValidationError: with the path of the best-matching error
    """
    if not isinstance(arguments, dict):
        raise SchemaValidationError(tool_name, "", "arguments must be an object")

    error = best_match(validator.iter_errors(arguments))
    if error is not None:
        raise SchemaValidationError(tool_name, _format_path(error), error.message)
    return arguments
